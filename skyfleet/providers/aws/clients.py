"""AWS clients with dependency injection.

Provides typed client wrappers that can be injected into the allocators.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config
from injector import Module, provider, singleton

from skyfleet.clock import Clock, SystemClock

from .config import AWS, AllocationTimeouts, TagMappings

if TYPE_CHECKING:
    from mypy_boto3_autoscaling import AutoScalingClient
    from mypy_boto3_ec2 import EC2Client


# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class EC2Clients:
    """The EC2 and Auto Scaling clients for one region."""

    def __init__(self, ec2: EC2Client | Any, autoscaling: AutoScalingClient | Any) -> None:
        self.ec2 = ec2
        self.autoscaling = autoscaling


# Standard retry mode backs off on throttling inside botocore; the allocators
# add their own deadline-bounded retries on top.
_BOTO_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})


# =============================================================================
# AWS Module
# =============================================================================


class AWSModule(Module):
    """DI module that provides AWS clients and allocator settings.

    Usage:
        >>> from injector import Injector
        >>> from skyfleet.providers.aws import AWSModule, AWS
        >>>
        >>> injector = Injector([AWSModule(AWS(region="us-east-1"))])
        >>> clients = injector.get(EC2Clients)
        >>> clients.ec2.describe_instances()
    """

    def __init__(
        self,
        config: AWS | None = None,
        timeouts: AllocationTimeouts | None = None,
        tags: TagMappings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or AWS()
        self._timeouts = timeouts or AllocationTimeouts()
        self._tags = tags or TagMappings()
        self._clock = clock or SystemClock()

    def configure(self, binder: Any) -> None:
        binder.bind(AWS, to=self._config)
        binder.bind(AllocationTimeouts, to=self._timeouts)
        binder.bind(TagMappings, to=self._tags)
        binder.bind(Clock, to=self._clock)  # type: ignore[type-abstract]

    @singleton
    @provider
    def provide_session(self, config: AWS) -> boto3.Session:
        """Provide singleton boto3 session."""
        return boto3.Session(profile_name=config.profile, region_name=config.region)

    @singleton
    @provider
    def provide_clients(self, session: boto3.Session, config: AWS) -> EC2Clients:
        """Provide the EC2 and Auto Scaling clients."""
        kwargs: dict[str, Any] = {"region_name": config.region, "config": _BOTO_CONFIG}
        if config.endpoint_url:
            kwargs["endpoint_url"] = config.endpoint_url
        return EC2Clients(
            ec2=session.client("ec2", **kwargs),
            autoscaling=session.client("autoscaling", **kwargs),
        )


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "AWSModule",
    "EC2Clients",
]
