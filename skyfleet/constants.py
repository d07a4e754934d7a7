"""Centralized constants and enums for skyfleet.

All tag keys, provider state names, status codes and default timeouts are
defined here so the allocators never compare against bare strings.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

from loguru import logger

log = logger.bind(component="constants")

# =============================================================================
# AWS Resource Tags
# =============================================================================


class FleetTag(StrEnum):
    """Default tag keys written on every skyfleet-owned resource."""

    VIRTUAL_INSTANCE_ID = "skyfleet:virtual-instance-id"
    TEMPLATE_NAME = "skyfleet:template-name"
    MANAGED = "skyfleet:managed"


# EC2 allows 50 tags per resource; the reserved keys above plus "Name".
MAX_TAGS_PER_RESOURCE: Final = 50
MAX_USER_DEFINED_TAGS: Final = MAX_TAGS_PER_RESOURCE - len(FleetTag) - 1

# Chunk size for tag filter values in a single describe call.
MAX_TAG_FILTER_VALUES: Final = 100


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    RUNNING = "running"
    STOPPED = "stopped"
    PENDING = "pending"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    SHUTTING_DOWN = "shutting-down"


TERMINAL_INSTANCE_STATES: Final = frozenset({InstanceState.TERMINATED, InstanceState.SHUTTING_DOWN})


# =============================================================================
# Spot Instance Requests
# =============================================================================


class SpotRequestState(StrEnum):
    """Spot instance request states."""

    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SpotRequestStatus(StrEnum):
    """Spot instance request status codes.

    Each code carries the request state it is reported with and whether the
    request can still make progress. See
    https://docs.aws.amazon.com/AWSEC2/latest/UserGuide/spot-request-status.html
    """

    CAPACITY_NOT_AVAILABLE = "capacity-not-available"
    CAPACITY_OVERSUBSCRIBED = "capacity-oversubscribed"
    PRICE_TOO_LOW = "price-too-low"
    NOT_SCHEDULED_YET = "not-scheduled-yet"
    LAUNCH_GROUP_CONSTRAINT = "launch-group-constraint"
    AZ_GROUP_CONSTRAINT = "az-group-constraint"
    PLACEMENT_GROUP_CONSTRAINT = "placement-group-constraint"
    CONSTRAINT_NOT_FULFILLABLE = "constraint-not-fulfillable"
    PENDING_EVALUATION = "pending-evaluation"
    PENDING_FULFILLMENT = "pending-fulfillment"
    FULFILLED = "fulfilled"
    REQUEST_CANCELED_AND_INSTANCE_RUNNING = "request-canceled-and-instance-running"
    MARKED_FOR_STOP = "marked-for-stop"
    MARKED_FOR_TERMINATION = "marked-for-termination"
    BAD_PARAMETERS = "bad-parameters"
    SCHEDULE_EXPIRED = "schedule-expired"
    CANCELED_BEFORE_FULFILLMENT = "canceled-before-fulfillment"
    SYSTEM_ERROR = "system-error"
    INSTANCE_TERMINATED_BY_PRICE = "instance-terminated-by-price"
    INSTANCE_TERMINATED_BY_USER = "instance-terminated-by-user"
    INSTANCE_TERMINATED_NO_CAPACITY = "instance-terminated-no-capacity"
    INSTANCE_TERMINATED_CAPACITY_OVERSUBSCRIBED = "instance-terminated-capacity-oversubscribed"
    INSTANCE_TERMINATED_LAUNCH_GROUP_CONSTRAINT = "instance-terminated-launch-group-constraint"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, code: str | None) -> SpotRequestStatus:
        try:
            return cls(code or "")
        except ValueError:
            log.warning("Unknown Spot instance request status code {code}", code=code)
            return cls.UNKNOWN

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_SPOT_STATUSES


_TERMINAL_SPOT_STATUSES: Final = frozenset({
    SpotRequestStatus.BAD_PARAMETERS,
    SpotRequestStatus.SCHEDULE_EXPIRED,
    SpotRequestStatus.CANCELED_BEFORE_FULFILLMENT,
    SpotRequestStatus.SYSTEM_ERROR,
    SpotRequestStatus.INSTANCE_TERMINATED_BY_PRICE,
    SpotRequestStatus.INSTANCE_TERMINATED_BY_USER,
    SpotRequestStatus.INSTANCE_TERMINATED_NO_CAPACITY,
    SpotRequestStatus.INSTANCE_TERMINATED_CAPACITY_OVERSUBSCRIBED,
    SpotRequestStatus.INSTANCE_TERMINATED_LAUNCH_GROUP_CONSTRAINT,
    SpotRequestStatus.UNKNOWN,
})


# =============================================================================
# Auto Scaling
# =============================================================================

SCALING_PROCESS_REPLACE_UNHEALTHY: Final = "ReplaceUnhealthy"
SCALING_PROCESS_AZ_REBALANCE: Final = "AZRebalance"


# =============================================================================
# Provider Error Codes
# =============================================================================


class ErrorCode(StrEnum):
    """AWS error codes the allocators branch on."""

    INSUFFICIENT_INSTANCE_CAPACITY = "InsufficientInstanceCapacity"
    INSTANCE_LIMIT_EXCEEDED = "InstanceLimitExceeded"
    MAX_SPOT_INSTANCE_COUNT_EXCEEDED = "MaxSpotInstanceCountExceeded"
    REQUEST_LIMIT_EXCEEDED = "RequestLimitExceeded"
    INVALID_INSTANCE_ID_NOT_FOUND = "InvalidInstanceID.NotFound"
    INVALID_INSTANCE_ID_MALFORMED = "InvalidInstanceID.Malformed"
    LAUNCH_TEMPLATE_ALREADY_EXISTS = "InvalidLaunchTemplateName.AlreadyExistsException"
    LAUNCH_TEMPLATE_NOT_FOUND = "InvalidLaunchTemplateName.NotFoundException"
    ALREADY_EXISTS = "AlreadyExists"
    VALIDATION_ERROR = "ValidationError"


# =============================================================================
# Default Timeouts (in seconds)
# =============================================================================

DEFAULT_SPOT_REQUEST_DURATION: Final = 10 * 60
DEFAULT_SPOT_PRICE_CHANGE_GRACE: Final = 0
DEFAULT_SPOT_POLL_INTERVAL: Final = 5
DEFAULT_NETWORK_POLL_INTERVAL: Final = 5
DEFAULT_TAG_RETRY_INTERVAL: Final = 5
DEFAULT_INSTANCE_START_TIMEOUT: Final = 30 * 60
DEFAULT_INSTANCE_FINDABLE_TIMEOUT: Final = 10 * 60
DEFAULT_ASG_REQUEST_DURATION: Final = 10 * 60
DEFAULT_ASG_POLL_INTERVAL: Final = 1
DEFAULT_CANCEL_SETTLE_TIMEOUT: Final = 60


# =============================================================================
# Default Resource Names
# =============================================================================

DEFAULT_REGION: Final = "us-east-1"
GLOBAL_CONFIG_DIR: Final = ".skyfleet"
PROJECT_CONFIG_NAME: Final = "skyfleet.toml"
