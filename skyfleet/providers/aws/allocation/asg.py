"""Auto Scaling group allocation.

A managed group is one launch template plus one Auto Scaling group, both
named after ``template.group_id``. The group, not skyfleet, decides which
instances exist, so its instances are addressed by EC2 instance id.
"""

from __future__ import annotations

import base64
import re
from collections.abc import Callable, Sequence
from typing import Any

from loguru import logger

from skyfleet.constants import (
    SCALING_PROCESS_AZ_REBALANCE,
    SCALING_PROCESS_REPLACE_UNHEALTHY,
    ErrorCode,
)
from skyfleet.errors import (
    AllocationError,
    ConditionAccumulator,
    InsufficientCapacityError,
    call_all,
    classify,
    error_code,
    error_message,
    suppressed_errors,
)
from skyfleet.retry import RetryPredicate, any_of, not_unrecoverable, on_error_code, retry_until
from skyfleet.types import InstanceTemplate, ProvisionedInstance

from ..helper import AllocationHelper
from .base import InstanceAllocator

log = logger.bind(component="asg")

_INSTANCE_NOT_IN_GROUP = re.compile(r"The instance (.+) is not part of Auto Scaling group .+[.].*")
_INSTANCE_NOT_IN_STATE = re.compile(r"The instance (.+) is not in .+[.].*")
_GROUP_NOT_FOUND = re.compile(r"AutoScalingGroup name not found")

_on_launch_template_not_found = on_error_code(ErrorCode.LAUNCH_TEMPLATE_NOT_FOUND)


def _validation_error_matching(pattern: re.Pattern[str]) -> RetryPredicate:
    def predicate(e: BaseException) -> bool:
        return error_code(e) == ErrorCode.VALIDATION_ERROR and pattern.fullmatch(error_message(e)) is not None

    return predicate


is_instance_not_in_group = _validation_error_matching(_INSTANCE_NOT_IN_GROUP)
is_instance_not_in_state = _validation_error_matching(_INSTANCE_NOT_IN_STATE)


class AutoScalingGroupAllocator(InstanceAllocator):
    """Allocates or shrinks one Auto Scaling group.

    ``virtual_instance_ids`` only sets the desired capacity when allocating.
    When deleting, they are the EC2 ids of the instances to remove; with
    none, the whole group and its launch template are deleted.
    """

    def __init__(
        self,
        helper: AllocationHelper,
        autoscaling: Any,
        template: InstanceTemplate,
        virtual_instance_ids: Sequence[str],
        min_count: int,
    ) -> None:
        if template.group_id is None:
            raise ValueError(f"Template {template.name} has no group id")
        super().__init__(helper, template, virtual_instance_ids, min_count)

        self.autoscaling = autoscaling
        self.group_name: str = template.group_id
        self.launch_template_name: str = template.group_id
        self.desired_count = len(self.virtual_instance_ids)
        self.request_expiration = self.clock.now() + self.timeouts.asg_request_duration

    def _retry[T](
        self,
        fn: Callable[[], T],
        also: RetryPredicate | None = None,
        *,
        cancellable: bool = True,
    ) -> T:
        """Retry anything transient, plus ``also``, at a fixed interval until expiration."""
        on = any_of(not_unrecoverable, also) if also is not None else not_unrecoverable
        return retry_until(
            fn,
            clock=self.clock,
            deadline=self.request_expiration,
            interval=self.timeouts.asg_poll_interval,
            on=on,
            cancellable=cancellable,
        )

    # -------------------------------------------------------------------------
    # Allocate
    # -------------------------------------------------------------------------

    def allocate(self) -> list[ProvisionedInstance]:
        log.info(
            "Requesting Auto Scaling group {name} of {min} - {n} instances",
            name=self.group_name, min=self.min_count, n=self.desired_count,
        )

        try:
            launch_template_data = self._launch_template_data()
            self._retry(lambda: self._create_launch_template(launch_template_data))
            self._retry(self._create_or_update_group, also=_on_launch_template_not_found)

            if not self.template.enable_automatic_instance_processing:
                self._retry(self._disable_automatic_instance_processing)

            instance_ids: set[str] = set()
            while True:
                instance_ids |= set(self._retry(self.group_instance_ids))
                if len(instance_ids) >= self.desired_count or self.clock.now() >= self.request_expiration:
                    break
                self.clock.sleep(self.timeouts.asg_poll_interval)

            if len(instance_ids) < self.min_count:
                raise InsufficientCapacityError(
                    f"Only allocated {len(instance_ids)} of {self.min_count} instances in configured time"
                )

            return self.helper.find(self.template, sorted(instance_ids))
        except BaseException as e:
            log.opt(exception=e).error("Problem allocating Auto Scaling group {name}", name=self.group_name)
            conditions = ConditionAccumulator()
            try:
                self._retry(self._delete_group, cancellable=False)
            except Exception as cleanup:
                log.warning(
                    "Exception deleting resources while allocating Auto Scaling group {name}, "
                    "check the AWS console to avoid a resource leak: {err}",
                    name=self.group_name, err=cleanup,
                )
                _accumulate(conditions, "Problem deleting Auto Scaling group resources", cleanup)

            if not isinstance(e, Exception):
                # Cancellation and interrupts propagate unchanged once cleaned up.
                raise

            error_type = InsufficientCapacityError if isinstance(e, InsufficientCapacityError) else AllocationError
            raise error_type(
                f"Problem allocating Auto Scaling group {self.group_name}",
                cause=classify(e),
                conditions=conditions.conditions,
            ) from e

    def group_instance_ids(self) -> list[str]:
        return [
            instance["InstanceId"]
            for group in self._describe_groups()
            for instance in group.get("Instances", [])
        ]

    def _describe_groups(self) -> list[dict[str, Any]]:
        # At most one group matches, so there is never a next page.
        response = self.autoscaling.describe_auto_scaling_groups(AutoScalingGroupNames=[self.group_name])
        return response.get("AutoScalingGroups", [])

    def _launch_template_data(self) -> dict[str, Any]:
        data = self.helper.launch_specification(self.template)
        if "UserData" in data:
            data["UserData"] = base64.b64encode(data["UserData"].encode()).decode("ascii")

        log.info(
            "Auto Scaling group request type: {type}, image: {image}",
            type=self.template.instance_type, image=self.template.image,
        )
        return data

    def _create_launch_template(self, data: dict[str, Any]) -> None:
        log.info("Creating launch template {name}", name=self.launch_template_name)
        try:
            self.ec2.create_launch_template(LaunchTemplateName=self.launch_template_name, LaunchTemplateData=data)
        except Exception as e:
            if error_code(e) != ErrorCode.LAUNCH_TEMPLATE_ALREADY_EXISTS:
                raise
            log.info("Launch template {name} already exists", name=self.launch_template_name)

    def _group_request(self) -> dict[str, Any]:
        request: dict[str, Any] = {
            "AutoScalingGroupName": self.group_name,
            "DesiredCapacity": self.desired_count,
            "LaunchTemplate": {"LaunchTemplateName": self.launch_template_name},
            "VPCZoneIdentifier": self.template.subnet_id,
            "MinSize": self.min_count,
            "MaxSize": self.desired_count,
        }
        if self.template.availability_zone:
            request["AvailabilityZones"] = [self.template.availability_zone]
        if self.template.placement_group:
            request["PlacementGroup"] = self.template.placement_group
        return request

    def _create_or_update_group(self) -> None:
        log.info("Attempting to create Auto Scaling group {name}", name=self.group_name)
        request = self._group_request()
        try:
            self.autoscaling.create_auto_scaling_group(**request, Tags=self.tags.group_tags(self.template))
            return
        except Exception as e:
            if error_code(e) != ErrorCode.ALREADY_EXISTS:
                raise

        for group in self._describe_groups():
            if group.get("DesiredCapacity", 0) < self.desired_count:
                log.info("Updating Auto Scaling group {name}", name=self.group_name)
                self.autoscaling.update_auto_scaling_group(**request)

    def _disable_automatic_instance_processing(self) -> None:
        log.info("Disabling automatic instance processing for Auto Scaling group {name}", name=self.group_name)
        self.autoscaling.suspend_processes(
            AutoScalingGroupName=self.group_name,
            ScalingProcesses=[SCALING_PROCESS_REPLACE_UNHEALTHY, SCALING_PROCESS_AZ_REBALANCE],
        )

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self) -> None:
        if not self.virtual_instance_ids:
            try:
                self._retry(self._delete_group)
            except Exception as e:
                raise _failure(f"Problem deleting Auto Scaling group {self.group_name}", e) from e
        else:
            try:
                self._delete_instances()
            except Exception as e:
                raise _failure(f"Problem deleting instances from Auto Scaling group {self.group_name}", e) from e

    def _delete_group(self) -> None:
        """Delete the group, then the launch template, reporting both failures."""
        call_all(self._delete_auto_scaling_group, self._delete_launch_template)

    def _delete_auto_scaling_group(self) -> None:
        log.info("Deleting Auto Scaling group {name}", name=self.group_name)
        try:
            self.autoscaling.delete_auto_scaling_group(AutoScalingGroupName=self.group_name, ForceDelete=True)
        except Exception as e:
            if not (error_code(e) == ErrorCode.VALIDATION_ERROR and _GROUP_NOT_FOUND.search(error_message(e))):
                raise
            log.info("Auto Scaling group {name} does not exist", name=self.group_name)

    def _delete_launch_template(self) -> None:
        log.info("Deleting launch template {name}", name=self.launch_template_name)
        try:
            self.ec2.delete_launch_template(LaunchTemplateName=self.launch_template_name)
        except Exception as e:
            if not _on_launch_template_not_found(e):
                raise

    def _delete_instances(self) -> None:
        instance_ids = self.virtual_instance_ids

        groups = self._retry(self._describe_groups)
        current_size = sum(g.get("DesiredCapacity", 0) for g in groups)
        current_min_size = sum(g.get("MinSize", 0) for g in groups)
        target_size = max(0, current_size - len(instance_ids))

        if target_size < current_min_size:
            # Instances cannot be detached below the group's minimum size.
            log.info("Updating MinSize of Auto Scaling group {name} to {n}", name=self.group_name, n=target_size)
            self._retry(lambda: self.autoscaling.update_auto_scaling_group(
                AutoScalingGroupName=self.group_name, MinSize=target_size,
            ))

        log.info("Detaching instances {ids} from Auto Scaling group {name}", ids=instance_ids, name=self.group_name)
        try:
            self._retry(lambda: self._detach(instance_ids))
        except Exception as e:
            if not (is_instance_not_in_group(e) or is_instance_not_in_state(e)):
                raise
            self._detach_individually(instance_ids)

        log.info("Terminating instances from Auto Scaling group {name}", name=self.group_name)
        self.helper.do_delete(instance_ids)

    def _detach_individually(self, instance_ids: list[str]) -> None:
        for instance_id in instance_ids:
            log.info("Detaching instance {id} from Auto Scaling group {name}", id=instance_id, name=self.group_name)
            try:
                self._retry(lambda: self._detach([instance_id]), also=is_instance_not_in_state)
            except Exception as e:
                if not is_instance_not_in_group(e):
                    raise
                log.warning(
                    "Instance {id} not in Auto Scaling group {name}, ignoring",
                    id=instance_id, name=self.group_name,
                )

    def _detach(self, instance_ids: list[str]) -> None:
        self.autoscaling.detach_instances(
            AutoScalingGroupName=self.group_name,
            InstanceIds=instance_ids,
            ShouldDecrementDesiredCapacity=True,
        )


def _accumulate(accumulator: ConditionAccumulator, prefix: str, exc: BaseException) -> None:
    accumulator.add_exception(prefix, exc)
    for other in suppressed_errors(exc):
        accumulator.add_exception(prefix, other)


def _failure(message: str, exc: Exception) -> AllocationError:
    """An error carrying ``exc`` as cause and any failures that accompanied it."""
    accumulator = ConditionAccumulator()
    for other in suppressed_errors(exc):
        accumulator.add_exception("Also failed", other)
    return AllocationError(message, cause=classify(exc), conditions=accumulator.conditions)
