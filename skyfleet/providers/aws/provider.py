"""EC2 provider: picks the allocator for a template and runs it.

Example:
    from skyfleet import EC2Provider, InstanceTemplate

    provider = EC2Provider.create()
    template = InstanceTemplate(
        name="workers",
        image="ami-0123456789abcdef0",
        instance_type="m5.large",
        subnet_id="subnet-0abc",
        security_group_ids=("sg-0abc",),
        spot=True,
    )
    instances = provider.allocate(template, ["w-1", "w-2", "w-3"], min_count=2)
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING

from injector import Injector, Module, provider, singleton
from loguru import logger

from skyfleet.clock import Clock, SystemClock
from skyfleet.logging import setup_logging
from skyfleet.types import InstanceTemplate, ProvisionedInstance

from .allocation.asg import AutoScalingGroupAllocator
from .allocation.base import InstanceAllocator
from .allocation.ondemand import OnDemandAllocator
from .allocation.spot import SpotGroupAllocator
from .clients import AWSModule, EC2Clients
from .config import AWS, AllocationTimeouts, TagMappings
from .helper import AllocationHelper
from .tags import TagHelper

if TYPE_CHECKING:
    from skyfleet.config import Settings

log = logger.bind(component="provider")


class EC2Provider:
    """Allocates, finds and deletes instances for templates.

    A provider holds no per-allocation state; every ``allocate`` call runs a
    fresh allocator, so concurrent calls for different templates are safe.
    """

    def __init__(
        self,
        clients: EC2Clients,
        *,
        config: AWS | None = None,
        timeouts: AllocationTimeouts | None = None,
        tags: TagMappings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.clients = clients
        self.config = config or AWS()
        self.timeouts = timeouts or AllocationTimeouts()
        self.clock = clock or SystemClock()
        self.tags = TagHelper(tags)
        self.helper = AllocationHelper(clients.ec2, self.tags, self.timeouts, self.clock, self.config)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        cancel: threading.Event | None = None,
        clock: Clock | None = None,
    ) -> EC2Provider:
        """Build a provider from resolved settings.

        Without ``settings`` the global and project TOML files are read.
        Setting ``cancel`` makes any in-flight wait raise
        ``AllocationCancelledError`` after rolling back.
        """
        if settings is None:
            from skyfleet.config import resolve_settings

            settings = resolve_settings()

        if settings.logging is not None:
            setup_logging(settings.logging)

        clock = clock or SystemClock(cancel)
        injector = Injector([
            AWSModule(settings.aws, settings.timeouts, settings.tags, clock),
            EC2ProviderModule(),
        ])
        log.debug("Creating EC2 provider for region {region}", region=settings.aws.region)
        return injector.get(EC2Provider)

    def allocator(
        self,
        template: InstanceTemplate,
        virtual_instance_ids: Sequence[str],
        min_count: int,
    ) -> InstanceAllocator:
        if template.managed_group:
            return AutoScalingGroupAllocator(
                self.helper, self.clients.autoscaling, template, virtual_instance_ids, min_count,
            )
        if template.spot:
            return SpotGroupAllocator(self.helper, template, virtual_instance_ids, min_count)
        return OnDemandAllocator(self.helper, template, virtual_instance_ids, min_count)

    def allocate(
        self,
        template: InstanceTemplate,
        virtual_instance_ids: Sequence[str],
        min_count: int,
    ) -> list[ProvisionedInstance]:
        """Allocate at least ``min_count`` instances, one per virtual instance id.

        Calling again with the same ids adopts what a previous, interrupted
        call left behind instead of allocating twice.

        Raises:
            InsufficientCapacityError: Fewer than ``min_count`` instances
                could be allocated before the deadlines passed.
            AllocationError: The allocation failed and was rolled back.
            AllocationCancelledError: The clock's cancel event was set.
        """
        return self.allocator(template, virtual_instance_ids, min_count).allocate()

    def find(self, template: InstanceTemplate, ids: Sequence[str]) -> list[ProvisionedInstance]:
        return self.helper.find(template, ids)

    def delete(self, template: InstanceTemplate, ids: Sequence[str]) -> None:
        """Terminate instances; for a managed group with no ids, delete the group."""
        self.allocator(template, ids, 0).delete()


class EC2ProviderModule(Module):
    """Builds the ``EC2Provider`` from the bindings of ``AWSModule``."""

    @singleton
    @provider
    def provide_ec2_provider(
        self,
        clients: EC2Clients,
        config: AWS,
        timeouts: AllocationTimeouts,
        tags: TagMappings,
        clock: Clock,
    ) -> EC2Provider:
        return EC2Provider(clients, config=config, timeouts=timeouts, tags=tags, clock=clock)
