from __future__ import annotations

import pytest

from skyfleet.types import AllocationRecord, InstanceTemplate

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def _template(**overrides) -> InstanceTemplate:
    return InstanceTemplate(**{"name": "workers", "image": "ami-1", "instance_type": "m5.large", "subnet_id": "subnet-1", **overrides})


class TestInstanceTemplate:
    def test_requires_name(self):
        with pytest.raises(ValueError, match="name"):
            _template(name="")

    def test_spot_price_must_be_positive(self):
        with pytest.raises(ValueError, match="positive"):
            _template(spot=True, spot_price=0)

    @pytest.mark.parametrize("minutes", [30, 90, 420])
    def test_invalid_block_duration(self, minutes):
        with pytest.raises(ValueError, match="Block duration"):
            _template(spot=True, block_duration_minutes=minutes)

    def test_collections_are_frozen(self):
        tags = {"team": "data"}
        template = _template(security_group_ids=["sg-1"], tags=tags)
        tags["team"] = "ml"

        assert template.security_group_ids == ("sg-1",)
        assert template.tags["team"] == "data"
        with pytest.raises(TypeError):
            template.tags["team"] = "ml"

    def test_managed_group(self):
        assert _template(group_id="g").managed_group
        assert not _template().managed_group


class TestAllocationRecord:
    def test_fields_only_move_forward(self):
        record = AllocationRecord("a")
        record.set_request_id("sir-1")
        record.set_request_id("sir-2")
        record.set_instance_id("i-1")
        record.set_instance_id("i-2")

        assert (record.request_id, record.instance_id) == ("sir-1", "i-1")

    def test_allocated_needs_tag_and_address(self):
        record = AllocationRecord("a")
        assert record.pending_submission

        record.set_instance_id("i-1")
        record.mark_tagged()
        assert not record.allocated

        record.set_private_ip("10.0.0.1")
        assert record.allocated
        assert not record.pending_submission

    def test_tag_and_address_need_an_instance(self):
        record = AllocationRecord("a", request_id="sir-1")

        with pytest.raises(ValueError):
            record.mark_tagged()
        with pytest.raises(ValueError):
            record.set_private_ip("10.0.0.1")
