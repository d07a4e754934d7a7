"""Cloud providers for skyfleet."""

from skyfleet.providers.aws import EC2Provider

__all__ = ["EC2Provider"]
