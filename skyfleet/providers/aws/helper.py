"""Instance lookup, termination and launch specifications shared by allocators."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from itertools import batched
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError
from loguru import logger

from skyfleet.clock import Clock
from skyfleet.constants import MAX_TAG_FILTER_VALUES, TERMINAL_INSTANCE_STATES, ErrorCode, InstanceState
from skyfleet.errors import UnrecoverableProviderError, propagate
from skyfleet.retry import on_not_found, retry_until
from skyfleet.types import InstanceTemplate, ProvisionedInstance

from .config import AWS, AllocationTimeouts
from .tags import TagHelper, tags_to_dict

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

type Instance = dict[str, Any]

log = logger.bind(component="helper")

type InstancePredicate = Callable[[Instance], bool]


def instance_state(instance: Instance) -> str:
    return instance.get("State", {}).get("Name", "")


def is_terminal(instance: Instance) -> bool:
    return instance_state(instance) in TERMINAL_INSTANCE_STATES


def is_not_terminal(instance: Instance) -> bool:
    return not is_terminal(instance)


class AllocationHelper:
    """Finds, describes and terminates instances by their virtual instance id.

    Instances of a managed group are addressed by EC2 instance id instead,
    since the group, not skyfleet, decides how many exist.
    """

    def __init__(
        self,
        ec2: EC2Client,
        tags: TagHelper,
        timeouts: AllocationTimeouts,
        clock: Clock,
        config: AWS | None = None,
    ) -> None:
        self.ec2 = ec2
        self.tags = tags
        self.timeouts = timeouts
        self.clock = clock
        self.config = config or AWS()

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def describe(self, **request: Any) -> Iterator[Instance]:
        """Yield every instance matched by a ``describe_instances`` request."""
        while True:
            result = self.ec2.describe_instances(**request)
            for reservation in result.get("Reservations", []):
                yield from reservation.get("Instances", [])
            token = result.get("NextToken")
            if not token:
                return
            request = {**request, "NextToken": token}

    def key_of(self, template: InstanceTemplate, instance: Instance) -> str | None:
        if template.managed_group:
            return instance["InstanceId"]
        return self.tags.virtual_instance_id(instance.get("Tags"))

    def virtual_instance_id_of(self, instance: Instance, kind: str = "instance") -> str:
        vid = self.tags.virtual_instance_id(instance.get("Tags"))
        if vid is None:
            raise ValueError(f"Any {kind} managed by skyfleet should have a {self.tags.id_tag_name} tag")
        return vid

    def do_find(
        self,
        template: InstanceTemplate,
        ids: Iterable[str],
        predicate: InstancePredicate | None = None,
    ) -> dict[str, Instance]:
        """Map each id to its instance, searching in chunks.

        When several instances carry the same id, a non-terminal one wins
        over terminal ones.
        """
        found: dict[str, Instance] = {}
        filter_name = "instance-id" if template.managed_group else f"tag:{self.tags.id_tag_name}"

        for chunk in batched(list(ids), MAX_TAG_FILTER_VALUES):
            request = {"Filters": [{"Name": filter_name, "Values": list(chunk)}]}
            for instance in self.describe(**request):
                key = self.key_of(template, instance)
                if key is None:
                    log.error("Instance {id} is not managed by skyfleet, skipping", id=instance.get("InstanceId"))
                    continue

                current = found.get(key)
                if current is None or is_terminal(current):
                    if current is not None:
                        log.warning(
                            "Retaining instance {new} in preference to terminal instance {old}",
                            new=instance["InstanceId"], old=current["InstanceId"],
                        )
                    found[key] = instance
                elif is_not_terminal(instance):
                    log.error(
                        "Two non-terminal instances share id {key}: {a} and {b}",
                        key=key, a=current["InstanceId"], b=instance["InstanceId"],
                    )
                else:
                    log.warning(
                        "Retaining non-terminal instance {old} in preference to terminal instance {new}",
                        old=current["InstanceId"], new=instance["InstanceId"],
                    )

        if predicate is None:
            return found
        return {k: v for k, v in found.items() if predicate(v)}

    def find(self, template: InstanceTemplate, ids: Iterable[str]) -> list[ProvisionedInstance]:
        ids = list(ids)
        log.info("Finding {n} instances for template {name}", n=len(ids), name=template.name)
        try:
            found = self.do_find(template, ids)
        except Exception as e:
            raise propagate(e) from e
        return [self.to_provisioned(template, key, instance) for key, instance in found.items()]

    def to_provisioned(self, template: InstanceTemplate, key: str, instance: Instance) -> ProvisionedInstance:
        return ProvisionedInstance(
            virtual_instance_id=key,
            instance_id=instance["InstanceId"],
            private_ip=instance.get("PrivateIpAddress"),
            public_ip=instance.get("PublicIpAddress"),
            instance_type=instance.get("InstanceType", template.instance_type),
            state=instance_state(instance) or None,
            spot=instance.get("InstanceLifecycle") == "spot",
            tags=tags_to_dict(instance.get("Tags")),
        )

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    def delete(self, template: InstanceTemplate, ids: Iterable[str]) -> None:
        ids = list(ids)
        if template.managed_group:
            instance_ids = ids
        else:
            try:
                found = self.do_find(template, ids)
            except Exception as e:
                raise propagate(e) from e
            unknown = set(ids) - set(found)
            if unknown:
                log.info("Unable to terminate instances, unknown {ids}", ids=sorted(unknown))
            instance_ids = [i["InstanceId"] for i in found.values()]

        self.do_delete(instance_ids)

    def do_delete(self, instance_ids: Iterable[str]) -> None:
        instance_ids = sorted(set(instance_ids))
        if not instance_ids:
            return

        log.info("Terminating {ids}", ids=instance_ids)
        try:
            self.ec2.terminate_instances(InstanceIds=instance_ids)
        except Exception as e:
            raise propagate(e) from e

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def wait_until_started(self, instance_id: str, deadline: float) -> bool:
        """Wait for an instance to leave ``pending``.

        Returns False if the instance terminated or never became visible
        before the deadline.
        """

        def check() -> bool:
            result = self.ec2.describe_instance_status(InstanceIds=[instance_id], IncludeAllInstances=True)
            for status in result.get("InstanceStatuses", []):
                if status.get("InstanceId") != instance_id:
                    continue
                state = status.get("InstanceState", {}).get("Name")
                if state in TERMINAL_INSTANCE_STATES:
                    log.error("Instance {id} has unexpectedly terminated", id=instance_id)
                    return False
                if state != InstanceState.PENDING:
                    return True
            raise _not_visible(instance_id)

        try:
            return retry_until(
                check,
                clock=self.clock,
                deadline=deadline,
                interval=self.timeouts.tag_retry_interval,
                on=on_not_found,
            )
        except Exception as e:
            if on_not_found(e):
                log.info("Timeout waiting for instance {id} to start", id=instance_id)
                return False
            raise propagate(e) from e

    # -------------------------------------------------------------------------
    # Launch specifications
    # -------------------------------------------------------------------------

    def block_device_mappings(self, template: InstanceTemplate) -> list[dict[str, Any]]:
        """Root volume mapping derived from the image, resized per the template."""
        try:
            images = self.ec2.describe_images(ImageIds=[template.image]).get("Images", [])
        except Exception as e:
            raise propagate(e) from e
        if not images:
            raise UnrecoverableProviderError(f"Image {template.image} not found", ErrorCode.VALIDATION_ERROR)

        image = images[0]
        if image.get("RootDeviceType", "ebs") != "ebs":
            raise UnrecoverableProviderError(
                f"The root device for image {template.image} must be \"ebs\", "
                f"found: {image.get('RootDeviceType')}"
            )
        root_name = image.get("RootDeviceName") or template.root_device_name
        log.debug("Image {image} root device {root}", image=template.image, root=root_name)
        return [{
            "DeviceName": root_name,
            "Ebs": {
                "VolumeSize": template.root_volume_size_gb,
                "VolumeType": template.root_volume_type,
                "DeleteOnTermination": True,
            },
        }]

    def network_interface(self, template: InstanceTemplate) -> dict[str, Any]:
        return {
            "DeviceIndex": 0,
            "SubnetId": template.subnet_id,
            "Groups": list(template.security_group_ids),
            "DeleteOnTermination": True,
            "AssociatePublicIpAddress": self.config.associate_public_ip,
        }

    def placement(self, template: InstanceTemplate) -> dict[str, Any]:
        placement: dict[str, Any] = {"Tenancy": template.tenancy}
        if template.availability_zone:
            placement["AvailabilityZone"] = template.availability_zone
        if template.placement_group:
            placement["GroupName"] = template.placement_group
        return placement

    def launch_specification(self, template: InstanceTemplate) -> dict[str, Any]:
        """Fields common to ``run_instances`` and Spot launch specifications."""
        spec: dict[str, Any] = {
            "ImageId": template.image,
            "InstanceType": template.instance_type,
            "NetworkInterfaces": [self.network_interface(template)],
            "BlockDeviceMappings": self.block_device_mappings(template),
            "EbsOptimized": template.ebs_optimized,
            "Placement": self.placement(template),
        }
        if template.iam_profile_name:
            spec["IamInstanceProfile"] = {"Name": template.iam_profile_name}
        if template.key_name:
            spec["KeyName"] = template.key_name
        if template.user_data:
            spec["UserData"] = template.user_data
        return spec


def _not_visible(instance_id: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": ErrorCode.INVALID_INSTANCE_ID_NOT_FOUND, "Message": f"{instance_id} not visible yet"}},
        "DescribeInstanceStatus",
    )
