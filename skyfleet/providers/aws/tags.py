"""Tag construction for skyfleet-owned EC2 resources.

Every instance and Spot request carries the virtual instance id and the
template name, under keys chosen by ``TagMappings``. Orphan reconciliation
and ``find`` search by those same keys, so the two must always agree.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from skyfleet.constants import MAX_USER_DEFINED_TAGS
from skyfleet.errors import UnrecoverableProviderError
from skyfleet.providers.aws.config import TagMappings

if TYPE_CHECKING:
    from skyfleet.types import InstanceTemplate

type Tag = dict[str, str]


def tags_to_dict(tags: Iterable[Mapping[str, Any]] | None) -> dict[str, str]:
    """Convert an EC2 ``Tags`` list into a plain dict."""
    return {t["Key"]: t["Value"] for t in tags or ()}


class TagHelper:
    def __init__(self, mappings: TagMappings | None = None) -> None:
        self.mappings = mappings or TagMappings()

    @property
    def id_tag_name(self) -> str:
        return self.mappings.virtual_instance_id_key

    @property
    def template_tag_name(self) -> str:
        return self.mappings.template_name_key

    def id_tag(self, virtual_instance_id: str) -> Tag:
        return {"Key": self.id_tag_name, "Value": virtual_instance_id}

    def template_name_tag(self, template_name: str) -> Tag:
        return {"Key": self.template_tag_name, "Value": template_name}

    def managed_tag(self) -> Tag:
        return {"Key": self.mappings.managed_key, "Value": "true"}

    def user_defined_tags(self, template: InstanceTemplate) -> list[Tag]:
        self.validate(template.tags)
        return [{"Key": self.mappings.tag_name(k), "Value": v} for k, v in template.tags.items()]

    def instance_tags(
        self,
        template: InstanceTemplate,
        virtual_instance_id: str,
        user_tags: list[Tag] | None = None,
    ) -> list[Tag]:
        """All tags for one instance: name, id, template, managed and user tags."""
        user_tags = self.user_defined_tags(template) if user_tags is None else user_tags
        return [
            {"Key": self.mappings.tag_name("Name"), "Value": f"{template.name}-{virtual_instance_id}"},
            self.id_tag(virtual_instance_id),
            self.template_name_tag(template.name),
            self.managed_tag(),
            *user_tags,
        ]

    def request_tags(
        self,
        template: InstanceTemplate,
        virtual_instance_id: str,
        user_tags: list[Tag] | None = None,
    ) -> list[Tag]:
        user_tags = self.user_defined_tags(template) if user_tags is None else user_tags
        return [self.id_tag(virtual_instance_id), self.template_name_tag(template.name), *user_tags]

    def group_tags(self, template: InstanceTemplate) -> list[Tag]:
        """Tags for an Auto Scaling group, propagated to the instances it launches."""
        if template.group_id is None:
            raise ValueError(f"Template {template.name} has no group id")
        return [
            {
                "Key": tag["Key"],
                "Value": tag["Value"],
                "ResourceId": template.group_id,
                "ResourceType": "auto-scaling-group",
                "PropagateAtLaunch": True,
            }
            for tag in (
                self.id_tag(template.group_id),
                self.template_name_tag(template.name),
                self.managed_tag(),
                *self.user_defined_tags(template),
            )
        ]

    def virtual_instance_id(self, tags: Iterable[Mapping[str, Any]] | None) -> str | None:
        return tags_to_dict(tags).get(self.id_tag_name)

    def template_name(self, tags: Iterable[Mapping[str, Any]] | None) -> str | None:
        return tags_to_dict(tags).get(self.template_tag_name)

    def tag_filter(self, virtual_instance_ids: Iterable[str]) -> dict[str, Any]:
        return {"Name": f"tag:{self.id_tag_name}", "Values": list(virtual_instance_ids)}

    @staticmethod
    def validate(tags: Mapping[str, str]) -> None:
        if len(tags) > MAX_USER_DEFINED_TAGS:
            raise UnrecoverableProviderError(
                f"Number of tags exceeds the maximum of {MAX_USER_DEFINED_TAGS}"
            )
