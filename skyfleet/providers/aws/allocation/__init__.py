"""Allocators, one per way of obtaining EC2 capacity."""

from skyfleet.providers.aws.allocation.asg import AutoScalingGroupAllocator
from skyfleet.providers.aws.allocation.base import InstanceAllocator, determine_client_token
from skyfleet.providers.aws.allocation.ondemand import OnDemandAllocator
from skyfleet.providers.aws.allocation.spot import SpotGroupAllocator

__all__ = [
    "AutoScalingGroupAllocator",
    "InstanceAllocator",
    "OnDemandAllocator",
    "SpotGroupAllocator",
    "determine_client_token",
]
