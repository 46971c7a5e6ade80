"""VPC task."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from ..cloud import dict_to_tags, tags_to_dict
from ..diff import ChangeSet, EqualityPolicy
from ..task import Task
from ..validation import require
from .base import check_shared_changes, lookup, owned_tags, require_existing, warn_undiscovered

if TYPE_CHECKING:
    from ..context import ReconciliationContext
    from ..targets import CloudFormationTarget, DirectTarget, TerraformTarget

logger = logging.getLogger(__name__)


@dataclass(eq=False, kw_only=True)
class VPC(Task):
    """An EC2 VPC."""

    cidr: str | None = None
    tags: dict[str, str] | None = None

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"id", "cidr"})
    equality: ClassVar[dict[str, EqualityPolicy]] = {"tags": EqualityPolicy.SUBSET}
    terraform_type: ClassVar[str] = "aws_vpc"
    cloudformation_type: ClassVar[str] = "AWS::EC2::VPC"

    def find(self, ctx: ReconciliationContext) -> VPC | None:
        cloud = ctx.require_cloud()
        vpc = lookup(self, cloud, "describe_vpcs", "Vpcs", "VpcIds")
        if vpc is None:
            return None

        logger.debug("Found VPC", extra={"task": str(self), "vpc_id": vpc["VpcId"]})
        return self.observed(
            vpc["VpcId"],
            cidr=vpc.get("CidrBlock"),
            tags=tags_to_dict(vpc.get("Tags")),
        )

    def check_changes(self, actual: Task | None, changes: ChangeSet) -> None:
        check_shared_changes(self, actual, changes)
        if actual is None and not self.is_shared:
            require(self.cidr, "cidr", self)

    def render_direct(
        self, t: DirectTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        if self.is_shared:
            return require_existing(self, actual).id

        cloud = t.cloud
        if actual is None:
            response = cloud.call("create_vpc", CidrBlock=self.cidr)
            vpc_id = response["Vpc"]["VpcId"]
            cloud.create_tags(vpc_id, owned_tags(self, cloud, self.tags))
            logger.info("Created VPC", extra={"task": str(self), "vpc_id": vpc_id})
            return vpc_id

        if "tags" in changes:
            cloud.create_tags(actual.id, changes["tags"])
        return actual.id

    def render_terraform(
        self, t: TerraformTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        if self.is_shared:
            return warn_undiscovered(self, actual)

        t.add_resource(self, {
            "cidr_block": self.cidr,
            "enable_dns_hostnames": True,
            "enable_dns_support": True,
            "tags": owned_tags(self, t.cloud, self.tags),
        })
        t.add_output(f"vpc_{self.name}_id", self.terraform_link(t))
        return None

    def render_cloudformation(
        self, t: CloudFormationTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        if self.is_shared:
            return warn_undiscovered(self, actual)

        tags = owned_tags(self, t.cloud, self.tags)
        t.add_resource(self, {
            "CidrBlock": self.cidr,
            "EnableDnsHostnames": True,
            "EnableDnsSupport": True,
            "Tags": dict_to_tags(tags),
        })
        return None
