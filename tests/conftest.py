"""In-memory EC2 and Auto Scaling fakes, and a clock that never really sleeps.

The fakes keep just enough state to behave like the real services from the
allocators' point of view: idempotent client tokens, Spot requests that
resolve when described, tag filters, and ``ClientError`` failures carrying
real AWS error codes.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

import pytest
from botocore.exceptions import ClientError

from skyfleet.errors import AllocationCancelledError
from skyfleet.providers.aws.config import AWS, AllocationTimeouts, TagMappings
from skyfleet.providers.aws.helper import AllocationHelper
from skyfleet.providers.aws.tags import TagHelper, tags_to_dict
from skyfleet.types import InstanceTemplate

START = 1_700_000_000.0


def client_error(code: str, message: str = "", *, status: int = 400, operation: str = "Operation") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Clock whose ``sleep`` advances time instantly.

    ``cancel_after`` makes the n-th cancellable sleep raise
    ``AllocationCancelledError``, like a caller setting the cancel event.
    """

    def __init__(self, start: float = START, cancel_after: int | None = None, max_sleeps: int = 100_000) -> None:
        self.time = start
        self.sleeps: list[tuple[float, bool]] = []
        self.cancel_after = cancel_after
        self.max_sleeps = max_sleeps

    def now(self) -> float:
        return self.time

    def sleep(self, seconds: float, *, cancellable: bool = True) -> None:
        if len(self.sleeps) >= self.max_sleeps:
            raise RuntimeError("runaway wait loop")
        self.sleeps.append((seconds, cancellable))
        if cancellable and self.cancel_after is not None:
            if sum(1 for _, c in self.sleeps if c) >= self.cancel_after:
                raise AllocationCancelledError("cancelled by test")
        self.time += seconds

    def advance(self, seconds: float) -> None:
        self.time += seconds


# =============================================================================
# Clients
# =============================================================================


@dataclass
class _Failure:
    error: BaseException
    when: Callable[[dict[str, Any]], bool] | None
    times: int | None


class _FakeClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._failures: dict[str, list[_Failure]] = {}

    def fail(
        self,
        method: str,
        error: BaseException,
        *,
        when: Callable[[dict[str, Any]], bool] | None = None,
        times: int | None = 1,
    ) -> None:
        """Make ``method`` raise ``error``; ``times=None`` fails forever."""
        self._failures.setdefault(method, []).append(_Failure(error, when, times))

    def _record(self, method: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((method, kwargs))
        for failure in self._failures.get(method, []):
            if failure.when is not None and not failure.when(kwargs):
                continue
            if failure.times is not None:
                failure.times -= 1
                if failure.times == 0:
                    self._failures[method].remove(failure)
            raise failure.error

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]


def _matches_filters(resource: dict[str, Any], filters: list[dict[str, Any]], id_key: str) -> bool:
    tags = tags_to_dict(resource.get("Tags"))
    for f in filters:
        name, values = f["Name"], f["Values"]
        if name.startswith("tag:"):
            if tags.get(name.removeprefix("tag:")) not in values:
                return False
        elif name == "instance-id":
            if resource.get(id_key) not in values:
                return False
    return True


def _set_tags(resource: dict[str, Any], tags: list[dict[str, str]]) -> None:
    current = tags_to_dict(resource.get("Tags"))
    current.update({t["Key"]: t["Value"] for t in tags})
    resource["Tags"] = [{"Key": k, "Value": v} for k, v in current.items()]


class FakeEC2(_FakeClient):
    """EC2 with instances, Spot requests and launch templates.

    Args:
        spot_capacity: How many Spot requests may ever be fulfilled;
            None is unlimited. Open requests resolve when described by id.
        unfulfilled_status: Status code of open requests beyond capacity.
        on_demand_capacity: How many on-demand instances may be launched.
        delay_ips: New instances get their private IP only once described
            by id.
    """

    def __init__(
        self,
        *,
        spot_capacity: int | None = None,
        unfulfilled_status: str = "capacity-not-available",
        on_demand_capacity: int | None = None,
        delay_ips: bool = False,
        root_device_type: str = "ebs",
    ) -> None:
        super().__init__()
        self.spot_capacity = spot_capacity
        self.unfulfilled_status = unfulfilled_status
        self.on_demand_capacity = on_demand_capacity
        self.delay_ips = delay_ips
        self.root_device_type = root_device_type

        self.instances: dict[str, dict[str, Any]] = {}
        self.spot_requests: dict[str, dict[str, Any]] = {}
        self.launch_templates: dict[str, dict[str, Any]] = {}
        self.volumes_tagged: dict[str, list[dict[str, str]]] = {}
        self._spot_tokens: dict[str, list[str]] = {}
        self._run_tokens: dict[str, list[str]] = {}
        self._ids = itertools.count(1)

    # -- helpers for tests -----------------------------------------------------

    def add_instance(
        self,
        *,
        tags: dict[str, str] | None = None,
        state: str = "running",
        private_ip: str | None = "auto",
        lifecycle: str | None = None,
    ) -> dict[str, Any]:
        n = next(self._ids)
        instance_id = f"i-{n:017x}"
        instance: dict[str, Any] = {
            "InstanceId": instance_id,
            "InstanceType": "m5.large",
            "State": {"Name": state},
            "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
            "BlockDeviceMappings": [{"DeviceName": "/dev/xvda", "Ebs": {"VolumeId": f"vol-{n:017x}"}}],
        }
        if private_ip == "auto" and not self.delay_ips:
            instance["PrivateIpAddress"] = f"10.0.{n // 256}.{n % 256}"
        elif private_ip not in (None, "auto"):
            instance["PrivateIpAddress"] = private_ip
        if lifecycle:
            instance["InstanceLifecycle"] = lifecycle
        self.instances[instance_id] = instance
        return instance

    def add_spot_request(
        self,
        *,
        tags: dict[str, str] | None = None,
        state: str = "open",
        status: str = "pending-evaluation",
        valid_until: float | None = None,
        instance_id: str | None = None,
    ) -> dict[str, Any]:
        request_id = f"sir-{next(self._ids):08x}"
        request: dict[str, Any] = {
            "SpotInstanceRequestId": request_id,
            "State": state,
            "Status": {"Code": status},
            "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
        }
        if valid_until is not None:
            request["ValidUntil"] = valid_until
        if instance_id is not None:
            request["InstanceId"] = instance_id
        self.spot_requests[request_id] = request
        return request

    def live_instances(self) -> list[dict[str, Any]]:
        return [i for i in self.instances.values() if i["State"]["Name"] not in ("terminated", "shutting-down")]

    def terminated_ids(self) -> set[str]:
        return {iid for iid, i in self.instances.items() if i["State"]["Name"] == "terminated"}

    def _advance_spot_request(self, request: dict[str, Any]) -> None:
        if request["State"] != "open":
            return
        if self.spot_capacity is not None and self.spot_capacity <= 0:
            request["Status"] = {"Code": self.unfulfilled_status}
            return
        if self.spot_capacity is not None:
            self.spot_capacity -= 1
        instance = self.add_instance(lifecycle="spot")
        request.update(State="active", Status={"Code": "fulfilled"}, InstanceId=instance["InstanceId"])

    # -- Spot ------------------------------------------------------------------

    def request_spot_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("request_spot_instances", kwargs)
        token = kwargs["ClientToken"]
        if token not in self._spot_tokens:
            valid_until = kwargs["ValidUntil"].timestamp()
            self._spot_tokens[token] = [
                self.add_spot_request(valid_until=valid_until)["SpotInstanceRequestId"]
                for _ in range(kwargs["InstanceCount"])
            ]
        return {"SpotInstanceRequests": [dict(self.spot_requests[r]) for r in self._spot_tokens[token]]}

    def describe_spot_instance_requests(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_spot_instance_requests", kwargs)
        if "SpotInstanceRequestIds" in kwargs:
            ids = kwargs["SpotInstanceRequestIds"]
            missing = [r for r in ids if r not in self.spot_requests]
            if missing:
                raise client_error("InvalidSpotInstanceRequestID.NotFound", f"{missing[0]} does not exist")
            requests = [self.spot_requests[r] for r in ids]
            for request in requests:
                self._advance_spot_request(request)
        else:
            requests = [
                r for r in self.spot_requests.values()
                if _matches_filters(r, kwargs.get("Filters", []), "SpotInstanceRequestId")
            ]
        return {"SpotInstanceRequests": [dict(r) for r in requests]}

    def cancel_spot_instance_requests(self, **kwargs: Any) -> dict[str, Any]:
        self._record("cancel_spot_instance_requests", kwargs)
        for request_id in kwargs["SpotInstanceRequestIds"]:
            request = self.spot_requests.get(request_id)
            if request is None:
                raise client_error("InvalidSpotInstanceRequestID.NotFound", f"{request_id} does not exist")
            if request["State"] == "active":
                request.update(State="cancelled", Status={"Code": "request-canceled-and-instance-running"})
            elif request["State"] == "open":
                request.update(State="cancelled", Status={"Code": "canceled-before-fulfillment"})
        return {}

    # -- Instances -------------------------------------------------------------

    def run_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("run_instances", kwargs)
        token = kwargs["ClientToken"]
        if token not in self._run_tokens:
            count = kwargs["MaxCount"]
            if self.on_demand_capacity is not None:
                count = min(count, self.on_demand_capacity)
                if count < kwargs["MinCount"]:
                    raise client_error("InsufficientInstanceCapacity", "Insufficient capacity.")
                self.on_demand_capacity -= count
            tags: dict[str, str] = {}
            for spec in kwargs.get("TagSpecifications", []):
                if spec["ResourceType"] == "instance":
                    tags = tags_to_dict(spec["Tags"])
            self._run_tokens[token] = [
                self.add_instance(tags=tags, state="pending")["InstanceId"] for _ in range(count)
            ]
        return {"Instances": [dict(self.instances[i]) for i in self._run_tokens[token]]}

    def describe_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_instances", kwargs)
        if "InstanceIds" in kwargs:
            missing = [i for i in kwargs["InstanceIds"] if i not in self.instances]
            if missing:
                raise client_error("InvalidInstanceID.NotFound", f"The instance ID '{missing[0]}' does not exist")
            instances = [self.instances[i] for i in kwargs["InstanceIds"]]
            if self.delay_ips:
                for n, instance in enumerate(instances, 1):
                    instance.setdefault("PrivateIpAddress", f"10.1.0.{n}")
        else:
            instances = [
                i for i in self.instances.values()
                if _matches_filters(i, kwargs.get("Filters", []), "InstanceId")
            ]
        return {"Reservations": [{"Instances": [dict(i) for i in instances]}]}

    def describe_instance_status(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_instance_status", kwargs)
        statuses = []
        for instance_id in kwargs["InstanceIds"]:
            instance = self.instances.get(instance_id)
            if instance is None:
                raise client_error("InvalidInstanceID.NotFound", f"The instance ID '{instance_id}' does not exist")
            # Instances leave pending the first time anyone looks.
            if instance["State"]["Name"] == "pending":
                instance["State"] = {"Name": "running"}
            statuses.append({"InstanceId": instance_id, "InstanceState": dict(instance["State"])})
        return {"InstanceStatuses": statuses}

    def terminate_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("terminate_instances", kwargs)
        for instance_id in kwargs["InstanceIds"]:
            if instance_id in self.instances:
                self.instances[instance_id]["State"] = {"Name": "terminated"}
        return {}

    def create_tags(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_tags", kwargs)
        for resource in kwargs["Resources"]:
            if resource.startswith("sir-"):
                if resource not in self.spot_requests:
                    raise client_error("InvalidSpotInstanceRequestID.NotFound", f"{resource} does not exist")
                _set_tags(self.spot_requests[resource], kwargs["Tags"])
            elif resource.startswith("vol-"):
                self.volumes_tagged[resource] = kwargs["Tags"]
            else:
                if resource not in self.instances:
                    raise client_error("InvalidInstanceID.NotFound", f"The instance ID '{resource}' does not exist")
                _set_tags(self.instances[resource], kwargs["Tags"])
        return {}

    def describe_images(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_images", kwargs)
        return {"Images": [{
            "ImageId": kwargs["ImageIds"][0],
            "RootDeviceType": self.root_device_type,
            "RootDeviceName": "/dev/xvda",
        }]}

    # -- Launch templates --------------------------------------------------------

    def create_launch_template(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_launch_template", kwargs)
        name = kwargs["LaunchTemplateName"]
        if name in self.launch_templates:
            raise client_error(
                "InvalidLaunchTemplateName.AlreadyExistsException",
                f"Launch template name already in use: {name}",
            )
        self.launch_templates[name] = kwargs["LaunchTemplateData"]
        return {"LaunchTemplate": {"LaunchTemplateName": name}}

    def delete_launch_template(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_launch_template", kwargs)
        name = kwargs["LaunchTemplateName"]
        if name not in self.launch_templates:
            raise client_error(
                "InvalidLaunchTemplateName.NotFoundException",
                f"The specified launch template, with template name {name}, does not exist.",
            )
        del self.launch_templates[name]
        return {}


class FakeAutoScaling(_FakeClient):
    """Auto Scaling groups that launch their instances into a ``FakeEC2``."""

    def __init__(self, ec2: FakeEC2, *, capacity: int | None = None) -> None:
        super().__init__()
        self.ec2 = ec2
        self.capacity = capacity
        self.groups: dict[str, dict[str, Any]] = {}
        self.suspended: dict[str, list[str]] = {}

    def _launch(self, group: dict[str, Any]) -> None:
        tags = {t["Key"]: t["Value"] for t in group["Tags"] if t.get("PropagateAtLaunch")}
        while len(group["Instances"]) < group["DesiredCapacity"]:
            if self.capacity is not None and self.capacity <= 0:
                return
            if self.capacity is not None:
                self.capacity -= 1
            instance = self.ec2.add_instance(tags=tags)
            group["Instances"].append({"InstanceId": instance["InstanceId"]})

    def _group(self, name: str) -> dict[str, Any]:
        group = self.groups.get(name)
        if group is None:
            raise client_error("ValidationError", f"AutoScalingGroup name not found - AutoScalingGroup '{name}' not found")
        return group

    def create_auto_scaling_group(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_auto_scaling_group", kwargs)
        name = kwargs["AutoScalingGroupName"]
        if name in self.groups:
            raise client_error("AlreadyExists", f"AutoScalingGroup by this name already exists - {name}")
        if kwargs["LaunchTemplate"]["LaunchTemplateName"] not in self.ec2.launch_templates:
            raise client_error("ValidationError", "You must use a valid fully-formed launch template.")
        self.groups[name] = {
            "AutoScalingGroupName": name,
            "DesiredCapacity": kwargs["DesiredCapacity"],
            "MinSize": kwargs["MinSize"],
            "MaxSize": kwargs["MaxSize"],
            "Tags": kwargs.get("Tags", []),
            "Instances": [],
        }
        return {}

    def update_auto_scaling_group(self, **kwargs: Any) -> dict[str, Any]:
        self._record("update_auto_scaling_group", kwargs)
        group = self._group(kwargs["AutoScalingGroupName"])
        for key in ("DesiredCapacity", "MinSize", "MaxSize"):
            if key in kwargs:
                group[key] = kwargs[key]
        return {}

    def describe_auto_scaling_groups(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_auto_scaling_groups", kwargs)
        groups = [self.groups[n] for n in kwargs["AutoScalingGroupNames"] if n in self.groups]
        for group in groups:
            self._launch(group)
        return {"AutoScalingGroups": [dict(g, Instances=list(g["Instances"])) for g in groups]}

    def suspend_processes(self, **kwargs: Any) -> dict[str, Any]:
        self._record("suspend_processes", kwargs)
        self.suspended[kwargs["AutoScalingGroupName"]] = kwargs["ScalingProcesses"]
        return {}

    def delete_auto_scaling_group(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_auto_scaling_group", kwargs)
        group = self._group(kwargs["AutoScalingGroupName"])
        if kwargs.get("ForceDelete"):
            self.ec2.terminate_instances(InstanceIds=[i["InstanceId"] for i in group["Instances"]])
        del self.groups[kwargs["AutoScalingGroupName"]]
        return {}

    def detach_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("detach_instances", kwargs)
        name = kwargs["AutoScalingGroupName"]
        group = self._group(name)
        members = {i["InstanceId"] for i in group["Instances"]}
        for instance_id in kwargs["InstanceIds"]:
            if instance_id not in members:
                raise client_error("ValidationError", f"The instance {instance_id} is not part of Auto Scaling group {name}.")
        if group["DesiredCapacity"] - len(kwargs["InstanceIds"]) < group["MinSize"]:
            raise client_error("ValidationError", "Desired capacity would fall below the group's min size.")
        group["Instances"] = [i for i in group["Instances"] if i["InstanceId"] not in kwargs["InstanceIds"]]
        if kwargs.get("ShouldDecrementDesiredCapacity"):
            group["DesiredCapacity"] -= len(kwargs["InstanceIds"])
        return {}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def timeouts() -> AllocationTimeouts:
    return AllocationTimeouts()


@pytest.fixture
def tags() -> TagHelper:
    return TagHelper(TagMappings())


@pytest.fixture
def aws_config() -> AWS:
    return AWS()


@pytest.fixture
def helper(ec2: FakeEC2, tags: TagHelper, timeouts: AllocationTimeouts, clock: FakeClock, aws_config: AWS) -> AllocationHelper:
    return AllocationHelper(ec2, tags, timeouts, clock, aws_config)


@pytest.fixture
def template() -> InstanceTemplate:
    return InstanceTemplate(
        name="workers",
        image="ami-0123456789abcdef0",
        instance_type="m5.large",
        subnet_id="subnet-0abc",
        security_group_ids=("sg-0abc",),
        tags={"team": "data"},
    )


@pytest.fixture
def spot_template(template: InstanceTemplate) -> InstanceTemplate:
    return replace(template, spot=True)


@pytest.fixture
def group_template(template: InstanceTemplate) -> InstanceTemplate:
    return replace(template, group_id="workers-asg")
