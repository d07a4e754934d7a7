"""skyfleet - idempotent group allocation of EC2 instances.

Example:

    from skyfleet import EC2Provider, InstanceTemplate

    provider = EC2Provider.create()
    template = InstanceTemplate(
        name="workers",
        image="ami-0123456789abcdef0",
        instance_type="c5.xlarge",
        subnet_id="subnet-0abc",
        security_group_ids=("sg-0abc",),
        spot=True,
    )

    instances = provider.allocate(template, ["w-1", "w-2"], min_count=1)
    provider.delete(template, [i.virtual_instance_id for i in instances])
"""

# Clock
from skyfleet.clock import Clock, SystemClock

# Configuration
from skyfleet.config import Settings, load_config, resolve_settings

# Errors
from skyfleet.errors import (
    AllocationCancelledError,
    AllocationError,
    Classification,
    Condition,
    ErrorClassification,
    InsufficientCapacityError,
    InvalidCredentialsError,
    ProviderError,
    TransientProviderError,
    UnrecoverableProviderError,
    classify,
)

# Logging
from skyfleet.logging import LogConfig, LogLevel, setup_logging, teardown_logging

# Provider
from skyfleet.providers.aws import AWS, AllocationTimeouts, EC2Provider, TagMappings

# Types
from skyfleet.types import InstanceTemplate, ProvisionedInstance

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    # Configuration
    "Settings",
    "load_config",
    "resolve_settings",
    # Errors
    "AllocationCancelledError",
    "AllocationError",
    "Classification",
    "Condition",
    "ErrorClassification",
    "InsufficientCapacityError",
    "InvalidCredentialsError",
    "ProviderError",
    "TransientProviderError",
    "UnrecoverableProviderError",
    "classify",
    # Logging
    "LogConfig",
    "LogLevel",
    "setup_logging",
    "teardown_logging",
    # Provider
    "AWS",
    "AllocationTimeouts",
    "EC2Provider",
    "TagMappings",
    # Types
    "InstanceTemplate",
    "ProvisionedInstance",
]
