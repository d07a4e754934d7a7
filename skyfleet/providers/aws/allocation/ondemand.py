"""On-demand instance allocation."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from loguru import logger

from skyfleet.constants import ErrorCode
from skyfleet.errors import (
    AllocationError,
    ConditionAccumulator,
    InsufficientCapacityError,
    classify,
    error_code,
    propagate,
)
from skyfleet.types import InstanceTemplate, ProvisionedInstance

from ..helper import AllocationHelper, Instance, is_not_terminal
from .base import InstanceAllocator, determine_client_token

log = logger.bind(component="ondemand")

_CAPACITY_CODES = frozenset({ErrorCode.INSUFFICIENT_INSTANCE_CAPACITY, ErrorCode.INSTANCE_LIMIT_EXCEEDED})


class OnDemandAllocator(InstanceAllocator):
    """Allocates on-demand instances, one per virtual instance id.

    Instances that already exist for an id are reused. On failure every
    instance the allocation holds is terminated.
    """

    def __init__(
        self,
        helper: AllocationHelper,
        template: InstanceTemplate,
        virtual_instance_ids: Sequence[str],
        min_count: int,
    ) -> None:
        super().__init__(helper, template, virtual_instance_ids, min_count)
        self.discriminator = int(self.clock.now() * 1000)

    def allocate(self) -> list[ProvisionedInstance]:
        log.info(
            "Requesting {n} instances for {template} (min {min})",
            n=len(self.virtual_instance_ids), template=self.template.name, min=self.min_count,
        )

        accumulator = ConditionAccumulator()
        instances: dict[str, Instance] = {}
        untagged: dict[str, Instance] = {}
        success = False

        try:
            instances.update(self.helper.do_find(self.template, self.virtual_instance_ids, predicate=is_not_terminal))
            if instances:
                log.info("Instances already allocated for {ids}", ids=sorted(instances))

            remaining = [vid for vid in self.virtual_instance_ids if vid not in instances]
            if remaining:
                if self.helper.config.use_tag_on_create:
                    self._run_tagged(remaining, instances, accumulator)
                else:
                    self._run_bulk(remaining, instances, untagged, accumulator)

            if len(instances) >= self.min_count:
                ready = self._wait_until_ready(instances)
                for vid in instances.keys() - ready.keys():
                    log.info("Instance {iid} for {vid} did not become ready", iid=instances[vid]["InstanceId"], vid=vid)

                if len(ready) >= self.min_count:
                    success = True
                    return [
                        self.helper.to_provisioned(self.template, vid, instance)
                        for vid, instance in ready.items()
                    ]

            raise InsufficientCapacityError(
                f"Acquired {len(instances)} of the {self.min_count} required instances",
                conditions=accumulator.conditions,
            )
        except AllocationError:
            raise
        except Exception as e:
            log.opt(exception=e).error("Problem allocating on-demand instances")
            raise AllocationError(
                "Problem allocating on-demand instances",
                cause=classify(e),
                conditions=accumulator.conditions,
            ) from e
        finally:
            self._clean_up(success, instances, untagged)

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    def _base_request(self) -> dict[str, Any]:
        request = self.helper.launch_specification(self.template)
        log.info("Instance request type: {type}, image: {image}", type=self.template.instance_type, image=self.template.image)
        return request

    def _tolerate_capacity_error(self, e: Exception, accumulator: ConditionAccumulator) -> None:
        """Record a capacity error and carry on, or raise anything else."""
        if error_code(e) not in _CAPACITY_CODES:
            raise propagate(e) from e
        log.warning("Hit instance capacity issues, attempting to proceed anyway: {err}", err=e)
        accumulator.add_warning(
            "Some instances were not allocated due to instance limits or capacity issues.",
            error_code(e),
        )

    def _run_tagged(
        self,
        remaining: list[str],
        instances: dict[str, Instance],
        accumulator: ConditionAccumulator,
    ) -> None:
        """Launch one instance per id into ``instances``, tagged in the launch request."""
        user_tags = self.tags.user_defined_tags(self.template)
        base = self._base_request()

        for vid in remaining:
            tags = self.tags.instance_tags(self.template, vid, user_tags)
            request = {
                **base,
                "MinCount": 1,
                "MaxCount": 1,
                "ClientToken": determine_client_token([vid], self.discriminator),
                "TagSpecifications": [
                    {"ResourceType": "instance", "Tags": tags},
                    {"ResourceType": "volume", "Tags": tags},
                ],
            }
            try:
                reservation = self.ec2.run_instances(**request)
            except Exception as e:
                self._tolerate_capacity_error(e, accumulator)
                continue
            instances[vid] = reservation["Instances"][0]
            log.info("Launched {iid} for {vid}", iid=instances[vid]["InstanceId"], vid=vid)

    def _run_bulk(
        self,
        remaining: list[str],
        instances: dict[str, Instance],
        untagged: dict[str, Instance],
        accumulator: ConditionAccumulator,
    ) -> None:
        """Launch instances in one request and tag them afterwards.

        Launched instances start out in ``untagged`` and move to
        ``instances`` once tagged, so a failure part way through leaves
        every one of them accounted for.
        """
        request = {
            **self._base_request(),
            "MinCount": max(1, self.min_count - len(instances)),
            "MaxCount": len(remaining),
            "ClientToken": determine_client_token(remaining, self.discriminator),
        }
        try:
            launched = self.ec2.run_instances(**request)["Instances"]
        except Exception as e:
            self._tolerate_capacity_error(e, accumulator)
            launched = []

        user_tags = self.tags.user_defined_tags(self.template)
        deadline = self.clock.now() + self.timeouts.instance_findable_timeout

        # Only as many ids as instances came back; pairing is by position.
        paired = list(zip(remaining, launched))
        untagged.update(paired)
        for vid, instance in paired:
            if self.tag_instance(vid, instance["InstanceId"], deadline, user_tags):
                instances[vid] = untagged.pop(vid)
            else:
                log.info("Instance {iid} could not be tagged", iid=instance["InstanceId"])

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def _wait_until_ready(self, instances: dict[str, Instance]) -> dict[str, Instance]:
        deadline = self.clock.now() + self.timeouts.instance_start_timeout
        ready: dict[str, Instance] = {}
        no_ip: dict[str, str] = {}

        for vid, instance in instances.items():
            if not self.helper.wait_until_started(instance["InstanceId"], deadline):
                log.info("Instance {iid} did not start", iid=instance["InstanceId"])
            elif instance.get("PrivateIpAddress"):
                ready[vid] = instance
            else:
                no_ip[vid] = instance["InstanceId"]

        ready.update(self.wait_for_private_ips(no_ip, deadline))
        return ready

    def _clean_up(self, success: bool, instances: dict[str, Instance], untagged: dict[str, Instance]) -> None:
        """Terminate untagged instances, and every instance after a failure."""
        doomed = {i["InstanceId"] for i in untagged.values()}
        if not success:
            log.error("Unsuccessful allocation of on-demand instances, terminating instances")
            doomed |= {i["InstanceId"] for i in instances.values()}
        if not doomed:
            return

        try:
            self.helper.do_delete(doomed)
        except Exception as e:
            log.error("Error while deleting instances after instance allocation: {err}", err=e)
