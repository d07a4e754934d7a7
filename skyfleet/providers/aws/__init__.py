"""AWS EC2 provider for skyfleet.

Example:
    from skyfleet.providers.aws import AWS, EC2Provider
    from skyfleet.config import Settings

    provider = EC2Provider.create(Settings(aws=AWS(region="eu-west-1")))
"""

from skyfleet.providers.aws.clients import AWSModule, EC2Clients
from skyfleet.providers.aws.config import AWS, AllocationTimeouts, TagMappings
from skyfleet.providers.aws.provider import EC2Provider, EC2ProviderModule

__all__ = [
    "AWS",
    "AWSModule",
    "AllocationTimeouts",
    "EC2Clients",
    "EC2Provider",
    "EC2ProviderModule",
    "TagMappings",
]
