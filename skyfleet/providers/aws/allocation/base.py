"""Behaviour shared by every allocator: client tokens, tagging, IP waits."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from loguru import logger

from skyfleet.clock import Clock
from skyfleet.errors import propagate
from skyfleet.retry import on_not_found, retry_until
from skyfleet.types import InstanceTemplate, ProvisionedInstance

from ..config import AllocationTimeouts
from ..helper import AllocationHelper, Instance, is_terminal
from ..tags import Tag, TagHelper

log = logger.bind(component="allocator")


def determine_client_token(virtual_instance_ids: Iterable[str], discriminator: int) -> str:
    """Derive an idempotency token for a create call.

    The ids are sorted first, so any ordering of the same set yields the same
    token. MD5 keeps the token under EC2's 64 character limit.

    Args:
        virtual_instance_ids: The ids covered by the create call.
        discriminator: Distinguishes attempts over the same ids, normally the
            request expiration in epoch milliseconds.
    """
    h = hashlib.md5(usedforsecurity=False)
    for vid in sorted(set(virtual_instance_ids)):
        h.update(vid.encode("utf-8"))
        h.update(b"\0")
    h.update(str(discriminator).encode("ascii"))
    return h.hexdigest()


class InstanceAllocator(ABC):
    """One allocation of ``virtual_instance_ids`` from ``template``.

    Allocators are single use: construct one per ``allocate()`` call.
    """

    def __init__(
        self,
        helper: AllocationHelper,
        template: InstanceTemplate,
        virtual_instance_ids: Sequence[str],
        min_count: int,
    ) -> None:
        ids = list(virtual_instance_ids)
        if len(set(ids)) != len(ids):
            raise ValueError("Virtual instance ids must be unique")
        if not 0 <= min_count <= len(ids):
            raise ValueError(f"min_count must be between 0 and {len(ids)}, got {min_count}")

        self.helper = helper
        self.template = template
        self.virtual_instance_ids = ids
        self.min_count = min_count

    @property
    def ec2(self) -> Any:
        return self.helper.ec2

    @property
    def clock(self) -> Clock:
        return self.helper.clock

    @property
    def timeouts(self) -> AllocationTimeouts:
        return self.helper.timeouts

    @property
    def tags(self) -> TagHelper:
        return self.helper.tags

    @abstractmethod
    def allocate(self) -> list[ProvisionedInstance]: ...

    def delete(self) -> None:
        self.helper.delete(self.template, self.virtual_instance_ids)

    # -------------------------------------------------------------------------
    # Instance tagging
    # -------------------------------------------------------------------------

    def tag_instance(
        self,
        virtual_instance_id: str,
        instance_id: str,
        deadline: float,
        user_tags: list[Tag] | None = None,
    ) -> bool:
        """Tag a new instance once it has started.

        Returns False, leaving the instance untagged, if it terminated or
        the tags could not be written before ``deadline``.
        """
        log.info("Tagging instance {id} / {vid}", id=instance_id, vid=virtual_instance_id)

        if not self.helper.wait_until_started(instance_id, deadline):
            return False

        tags = self.tags.instance_tags(self.template, virtual_instance_id, user_tags)
        try:
            retry_until(
                lambda: self.ec2.create_tags(Resources=[instance_id], Tags=tags),
                clock=self.clock,
                deadline=deadline,
                interval=self.timeouts.tag_retry_interval,
                on=on_not_found,
            )
        except Exception as e:
            if on_not_found(e):
                log.warning("Timeout waiting for instance {id} to be tagged", id=instance_id)
                return False
            raise propagate(e) from e

        if self.helper.config.tag_ebs_volumes:
            self._tag_ebs_volumes(instance_id, tags, deadline)

        return True

    def _tag_ebs_volumes(self, instance_id: str, tags: list[Tag], deadline: float) -> None:
        try:
            instances = retry_until(
                lambda: list(self.helper.describe(InstanceIds=[instance_id])),
                clock=self.clock,
                deadline=deadline,
                interval=self.timeouts.tag_retry_interval,
                on=on_not_found,
            )
        except Exception as e:
            if on_not_found(e):
                log.warning("Timeout describing instance {id}", id=instance_id)
                return
            raise propagate(e) from e

        volume_ids = [
            mapping["Ebs"]["VolumeId"]
            for instance in instances
            for mapping in instance.get("BlockDeviceMappings", [])
            if "Ebs" in mapping
        ]
        if not volume_ids:
            return

        log.info("Tagging volumes {ids} of {id}", ids=volume_ids, id=instance_id)
        try:
            self.ec2.create_tags(Resources=volume_ids, Tags=tags)
        except Exception as e:
            raise propagate(e) from e

    # -------------------------------------------------------------------------
    # Network readiness
    # -------------------------------------------------------------------------

    def wait_for_private_ips(
        self,
        instance_ids: Mapping[str, str],
        deadline: float | None = None,
    ) -> dict[str, Instance]:
        """Wait until each instance has a private IP.

        Args:
            instance_ids: Virtual instance id to EC2 instance id.
            deadline: Optional cut-off; by default the wait only ends when
                every instance has an address or has terminated.

        Returns:
            Virtual instance id to the described instance, for each instance
            that got an address. Terminated instances are left out.
        """
        pending = {iid: vid for vid, iid in instance_ids.items()}
        addressed: dict[str, Instance] = {}

        while pending:
            log.info("Waiting for {n} instance(s) to get a private IP", n=len(pending))
            try:
                for instance in self.helper.describe(InstanceIds=sorted(pending)):
                    iid = instance["InstanceId"]
                    if iid not in pending:
                        continue
                    if is_terminal(instance):
                        log.info("Instance {id} has terminated unexpectedly, skipping IP wait", id=iid)
                        del pending[iid]
                    elif instance.get("PrivateIpAddress"):
                        log.info("Instance {id} got IP {ip}", id=iid, ip=instance["PrivateIpAddress"])
                        addressed[pending.pop(iid)] = instance
            except Exception as e:
                if not on_not_found(e):
                    raise propagate(e) from e

            if not pending:
                break
            if deadline is not None and self.clock.now() >= deadline:
                log.warning("{n} instance(s) still have no private IP, giving up", n=len(pending))
                break
            self.clock.sleep(self.timeouts.network_poll_interval)

        return addressed
