"""AWS provider configuration.

Immutable configuration dataclasses for the EC2 allocators.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from types import MappingProxyType

from skyfleet.constants import (
    DEFAULT_ASG_POLL_INTERVAL,
    DEFAULT_ASG_REQUEST_DURATION,
    DEFAULT_CANCEL_SETTLE_TIMEOUT,
    DEFAULT_INSTANCE_FINDABLE_TIMEOUT,
    DEFAULT_INSTANCE_START_TIMEOUT,
    DEFAULT_NETWORK_POLL_INTERVAL,
    DEFAULT_REGION,
    DEFAULT_SPOT_POLL_INTERVAL,
    DEFAULT_SPOT_PRICE_CHANGE_GRACE,
    DEFAULT_SPOT_REQUEST_DURATION,
    DEFAULT_TAG_RETRY_INTERVAL,
    FleetTag,
)


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS connection and behaviour settings.

    Example:
        >>> from skyfleet.providers.aws import AWS
        >>> config = AWS(region="us-west-2", tag_ebs_volumes=True)

    Args:
        region: AWS region for resources. Default: us-east-1
        profile: Named profile from the shared credentials file.
        endpoint_url: Override the service endpoint (e.g. a local stub).
        tag_ebs_volumes: Also tag the EBS volumes attached to each instance.
        use_tag_on_create: Tag on-demand instances in the launch request
            itself instead of after they are created.
        associate_public_ip: Give each network interface a public address.
    """

    region: str = DEFAULT_REGION
    profile: str | None = None
    endpoint_url: str | None = None
    tag_ebs_volumes: bool = False
    use_tag_on_create: bool = False
    associate_public_ip: bool = True


# Intervals must be strictly positive; durations may be zero.
_INTERVALS = frozenset({
    "spot_poll_interval",
    "network_poll_interval",
    "tag_retry_interval",
    "asg_poll_interval",
})


@dataclass(frozen=True, slots=True)
class AllocationTimeouts:
    """Deadlines and poll intervals, in seconds.

    Args:
        spot_request_duration: How long a Spot request may stay open.
        spot_price_change_grace: Extra time given to ``price-too-low``
            requests after submission before they are abandoned.
        spot_poll_interval: Pause between Spot request status rounds.
        network_poll_interval: Pause between private IP rounds.
        tag_retry_interval: Pause between tagging attempts on NotFound.
        instance_start_timeout: How long to wait for an instance to leave
            ``pending``.
        instance_findable_timeout: How long to wait for new instances to
            become visible to a tag search after allocation.
        asg_request_duration: How long to wait for a group to fill.
        asg_poll_interval: Pause between group membership rounds.
        cancel_settle_timeout: How long rollback waits for cancelled
            requests to settle.
    """

    spot_request_duration: float = DEFAULT_SPOT_REQUEST_DURATION
    spot_price_change_grace: float = DEFAULT_SPOT_PRICE_CHANGE_GRACE
    spot_poll_interval: float = DEFAULT_SPOT_POLL_INTERVAL
    network_poll_interval: float = DEFAULT_NETWORK_POLL_INTERVAL
    tag_retry_interval: float = DEFAULT_TAG_RETRY_INTERVAL
    instance_start_timeout: float = DEFAULT_INSTANCE_START_TIMEOUT
    instance_findable_timeout: float = DEFAULT_INSTANCE_FINDABLE_TIMEOUT
    asg_request_duration: float = DEFAULT_ASG_REQUEST_DURATION
    asg_poll_interval: float = DEFAULT_ASG_POLL_INTERVAL
    cancel_settle_timeout: float = DEFAULT_CANCEL_SETTLE_TIMEOUT

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ValueError(f"Timeout '{f.name}' must be a number, got {value!r}")
            if f.name in _INTERVALS and value <= 0:
                raise ValueError(f"Interval '{f.name}' must be positive, got {value}")
            if value < 0:
                raise ValueError(f"Timeout '{f.name}' must not be negative, got {value}")


@dataclass(frozen=True, slots=True)
class TagMappings:
    """Naming policy for the tags skyfleet writes and searches by.

    ``custom`` renames any tag key, reserved or user-defined, on its way to
    the provider.

    Example:
        >>> tags = TagMappings(custom={"skyfleet:virtual-instance-id": "owner-id"})
        >>> tags.virtual_instance_id_key
        'owner-id'
    """

    custom: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for key, value in self.custom.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValueError(f"Tag mapping {key!r} -> {value!r} must map a string to a string")
        object.__setattr__(self, "custom", MappingProxyType(dict(self.custom)))

    def tag_name(self, key: str) -> str:
        return self.custom.get(key, key)

    @property
    def virtual_instance_id_key(self) -> str:
        return self.tag_name(FleetTag.VIRTUAL_INSTANCE_ID)

    @property
    def template_name_key(self) -> str:
        return self.tag_name(FleetTag.TEMPLATE_NAME)

    @property
    def managed_key(self) -> str:
        return self.tag_name(FleetTag.MANAGED)
