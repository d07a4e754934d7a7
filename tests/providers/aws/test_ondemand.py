from __future__ import annotations

import pytest
from conftest import FakeClock, FakeEC2, client_error

from skyfleet.errors import AllocationError, Classification, InsufficientCapacityError
from skyfleet.providers.aws.allocation.base import determine_client_token
from skyfleet.providers.aws.allocation.ondemand import OnDemandAllocator
from skyfleet.providers.aws.config import AWS, AllocationTimeouts
from skyfleet.providers.aws.helper import AllocationHelper
from skyfleet.providers.aws.tags import TagHelper, tags_to_dict

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit"), pytest.mark.timeout(30)]

IDS = ["n-1", "n-2", "n-3"]
ID_TAG = "skyfleet:virtual-instance-id"


def _allocator(ec2: FakeEC2, template, ids=IDS, min_count=3, config: AWS | None = None) -> OnDemandAllocator:
    helper = AllocationHelper(ec2, TagHelper(), AllocationTimeouts(), FakeClock(), config or AWS())
    return OnDemandAllocator(helper, template, ids, min_count)


class TestBulkLaunch:
    def test_launches_and_tags_every_id(self, template):
        ec2 = FakeEC2()

        result = _allocator(ec2, template).allocate()

        assert sorted(r.virtual_instance_id for r in result) == IDS
        assert all(r.private_ip for r in result)
        assert not any(r.spot for r in result)
        tagged = sorted(tags_to_dict(i["Tags"])[ID_TAG] for i in ec2.live_instances())
        assert tagged == IDS

    def test_run_request_shape(self, template):
        ec2 = FakeEC2()
        allocator = _allocator(ec2, template, min_count=2)

        allocator.allocate()

        [call] = ec2.calls_to("run_instances")
        assert call["MinCount"] == 2
        assert call["MaxCount"] == 3
        assert call["ClientToken"] == determine_client_token(IDS, allocator.discriminator)
        assert call["NetworkInterfaces"][0]["SubnetId"] == "subnet-0abc"
        assert call["BlockDeviceMappings"][0]["DeviceName"] == "/dev/xvda"

    def test_reuses_existing_instances(self, template):
        ec2 = FakeEC2()
        existing = ec2.add_instance(tags={ID_TAG: "n-1", "skyfleet:template-name": "workers"})

        result = _allocator(ec2, template).allocate()

        [call] = ec2.calls_to("run_instances")
        assert (call["MinCount"], call["MaxCount"]) == (2, 2)
        assert {r.virtual_instance_id: r.instance_id for r in result}["n-1"] == existing["InstanceId"]


class TestTagOnCreate:
    def test_one_request_per_id_with_tags(self, template):
        ec2 = FakeEC2()

        result = _allocator(ec2, template, config=AWS(use_tag_on_create=True)).allocate()

        calls = ec2.calls_to("run_instances")
        assert len(calls) == 3
        assert all((c["MinCount"], c["MaxCount"]) == (1, 1) for c in calls)
        resource_types = {s["ResourceType"] for s in calls[0]["TagSpecifications"]}
        assert resource_types == {"instance", "volume"}
        assert len(result) == 3
        assert not any(
            kw["Resources"][0].startswith("i-") for kw in ec2.calls_to("create_tags")
        )


class TestCapacity:
    def test_below_minimum_raises_with_warning(self, template):
        ec2 = FakeEC2(on_demand_capacity=1)

        with pytest.raises(InsufficientCapacityError) as exc_info:
            _allocator(ec2, template).allocate()

        assert [c.code for c in exc_info.value.conditions] == ["InsufficientInstanceCapacity"]
        assert ec2.live_instances() == []

    def test_partial_launch_meets_lower_minimum(self, template):
        ec2 = FakeEC2(on_demand_capacity=1)

        result = _allocator(ec2, template, min_count=1).allocate()

        assert len(result) == 1

    def test_zero_minimum_returns_nothing(self, template):
        ec2 = FakeEC2(on_demand_capacity=0)

        assert _allocator(ec2, template, min_count=0).allocate() == []


class TestFailure:
    def test_unrecoverable_error_terminates_launched_instances(self, template):
        ec2 = FakeEC2()
        ec2.fail("describe_instance_status", client_error("UnauthorizedOperation"), times=None)

        with pytest.raises(AllocationError) as exc_info:
            _allocator(ec2, template).allocate()

        assert exc_info.value.cause.kind is Classification.AUTHORIZATION
        assert len(ec2.instances) == 3
        assert ec2.live_instances() == []

    def test_untagged_instances_are_terminated_on_success(self, template):
        ec2 = FakeEC2()
        ec2.fail(
            "create_tags",
            client_error("InvalidInstanceID.NotFound"),
            when=lambda kw: kw["Resources"] == ["i-00000000000000003"],
            times=None,
        )

        result = _allocator(ec2, template, min_count=2).allocate()

        assert len(result) == 2
        assert ec2.terminated_ids() == {"i-00000000000000003"}
