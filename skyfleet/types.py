"""Core value types shared by the allocators."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

from loguru import logger

log = logger.bind(component="types")


@dataclass(frozen=True, slots=True)
class InstanceTemplate:
    """Everything needed to launch one kind of instance.

    A template with ``group_id`` set is provisioned as an Auto Scaling
    group; otherwise ``spot`` selects between Spot and on-demand.

    Args:
        name: Template name, written to every resource as a tag.
        image: AMI id.
        instance_type: EC2 instance type, e.g. ``m5.large``.
        subnet_id: Subnet for the primary network interface.
        security_group_ids: Security groups for the primary interface.
        tags: User-defined tags, applied in addition to the reserved ones.
        spot: Request Spot capacity instead of on-demand.
        spot_price: Maximum hourly price in USD. None bids up to on-demand.
        block_duration_minutes: Spot block duration (60 to 360, step 60).
        group_id: Auto Scaling group name; switches to managed-group mode.
        enable_automatic_instance_processing: Keep the group's
            ``ReplaceUnhealthy`` and ``AZRebalance`` processes running.
    """

    name: str
    image: str
    instance_type: str
    subnet_id: str
    security_group_ids: tuple[str, ...] = ()
    iam_profile_name: str | None = None
    key_name: str | None = None
    availability_zone: str | None = None
    placement_group: str | None = None
    tenancy: str = "default"
    ebs_optimized: bool = False
    user_data: str | None = None
    root_volume_size_gb: int = 50
    root_volume_type: str = "gp3"
    root_device_name: str = "/dev/sda1"
    tags: Mapping[str, str] = field(default_factory=dict)
    spot: bool = False
    spot_price: float | None = None
    block_duration_minutes: int | None = None
    group_id: str | None = None
    enable_automatic_instance_processing: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Template name must not be empty")
        if self.spot_price is not None and self.spot_price <= 0:
            raise ValueError(f"Spot price must be positive, got {self.spot_price}")
        if self.block_duration_minutes is not None and (
            self.block_duration_minutes % 60 or not 60 <= self.block_duration_minutes <= 360
        ):
            raise ValueError(
                f"Block duration must be a multiple of 60 between 60 and 360, "
                f"got {self.block_duration_minutes}"
            )
        object.__setattr__(self, "security_group_ids", tuple(self.security_group_ids))
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))

    @property
    def managed_group(self) -> bool:
        return self.group_id is not None


@dataclass(frozen=True, slots=True)
class ProvisionedInstance:
    """An allocated instance, as returned to the caller."""

    virtual_instance_id: str
    instance_id: str
    private_ip: str | None
    public_ip: str | None = None
    instance_type: str | None = None
    state: str | None = None
    spot: bool = False
    tags: Mapping[str, str] = field(default_factory=dict)


class AllocationPhase(StrEnum):
    RECONCILING = "reconciling"
    SUBMITTING = "submitting"
    TAGGING_REQUESTS = "tagging-requests"
    POLLING = "polling"
    TAGGING_INSTANCES = "tagging-instances"
    AWAITING_NETWORK = "awaiting-network"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling-back"
    FAILED = "failed"


@dataclass(slots=True)
class AllocationRecord:
    """What is known about one virtual instance during an allocation.

    Fields only ever move forward: once set, a field keeps its value for the
    rest of the session. Setting a different value is ignored and logged.
    """

    virtual_instance_id: str
    request_id: str | None = None
    instance_id: str | None = None
    tagged: bool = False
    private_ip: str | None = None

    def _fill(self, attr: str, value: str) -> None:
        current = getattr(self, attr)
        if current is None:
            setattr(self, attr, value)
        elif current != value:
            log.warning(
                "Ignoring {attr}={new} for {vid}, already {old}",
                attr=attr, new=value, vid=self.virtual_instance_id, old=current,
            )

    def set_request_id(self, request_id: str) -> None:
        self._fill("request_id", request_id)

    def set_instance_id(self, instance_id: str) -> None:
        self._fill("instance_id", instance_id)

    def set_private_ip(self, private_ip: str) -> None:
        if self.instance_id is None:
            raise ValueError(f"{self.virtual_instance_id} has no instance to address")
        self._fill("private_ip", private_ip)

    def mark_tagged(self) -> None:
        if self.instance_id is None:
            raise ValueError(f"{self.virtual_instance_id} has no instance to tag")
        self.tagged = True

    @property
    def allocated(self) -> bool:
        """Has an instance that is tagged and reachable."""
        return self.instance_id is not None and self.tagged and self.private_ip is not None

    @property
    def pending_submission(self) -> bool:
        return self.request_id is None and self.instance_id is None
