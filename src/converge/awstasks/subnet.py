"""Subnet task."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from ..cloud import dict_to_tags, tags_to_dict
from ..diff import ChangeSet, EqualityPolicy
from ..task import ResourceRef, Task
from ..validation import require
from .base import (
    check_shared_changes,
    lookup,
    owned_tags,
    require_existing,
    vpc_filter,
    warn_undiscovered,
)
from .vpc import VPC

if TYPE_CHECKING:
    from ..context import ReconciliationContext
    from ..targets import CloudFormationTarget, DirectTarget, TerraformTarget

logger = logging.getLogger(__name__)


@dataclass(eq=False, kw_only=True)
class Subnet(Task):
    """An EC2 subnet inside a VPC."""

    vpc: VPC | ResourceRef | None = None
    cidr: str | None = None
    zone: str | None = None
    tags: dict[str, str] | None = None

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"id", "vpc", "cidr", "zone"})
    required_fields: ClassVar[frozenset[str]] = frozenset({"vpc"})
    equality: ClassVar[dict[str, EqualityPolicy]] = {"tags": EqualityPolicy.SUBSET}
    terraform_type: ClassVar[str] = "aws_subnet"
    cloudformation_type: ClassVar[str] = "AWS::EC2::Subnet"

    def dependencies(self) -> list[Task]:
        return [self.vpc] if isinstance(self.vpc, Task) else []

    def find(self, ctx: ReconciliationContext) -> Subnet | None:
        cloud = ctx.require_cloud()

        extra_filters = []
        if isinstance(self.vpc, Task):
            vpc_id = ctx.resolved_id(self.vpc)
            if vpc_id is None:
                # The VPC does not exist yet, so neither can the subnet
                return None
            extra_filters.append(vpc_filter(vpc_id))
        elif isinstance(self.vpc, ResourceRef):
            extra_filters.append(vpc_filter(self.vpc.id))

        subnet = lookup(self, cloud, "describe_subnets", "Subnets", "SubnetIds", extra_filters)
        if subnet is None:
            return None

        return self.observed(
            subnet["SubnetId"],
            vpc=ResourceRef(subnet["VpcId"]),
            cidr=subnet.get("CidrBlock"),
            zone=subnet.get("AvailabilityZone"),
            tags=tags_to_dict(subnet.get("Tags")),
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
            request = {
                "VpcId": t.resolved_id(self.vpc, required=True),
                "CidrBlock": self.cidr,
            }
            if self.zone:
                request["AvailabilityZone"] = self.zone
            response = cloud.call("create_subnet", **request)
            subnet_id = response["Subnet"]["SubnetId"]
            cloud.create_tags(subnet_id, owned_tags(self, cloud, self.tags))
            logger.info("Created subnet", extra={"task": str(self), "subnet_id": subnet_id})
            return subnet_id

        if "tags" in changes:
            cloud.create_tags(actual.id, changes["tags"])
        return actual.id

    def render_terraform(
        self, t: TerraformTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        if self.is_shared:
            return warn_undiscovered(self, actual)

        body = {
            "vpc_id": self.vpc.terraform_link(t),
            "cidr_block": self.cidr,
            "tags": owned_tags(self, t.cloud, self.tags),
        }
        if self.zone:
            body["availability_zone"] = self.zone
        t.add_resource(self, body)
        t.add_output(f"subnet_{self.name}_id", self.terraform_link(t))
        return None

    def render_cloudformation(
        self, t: CloudFormationTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        if self.is_shared:
            return warn_undiscovered(self, actual)

        properties = {
            "VpcId": self.vpc.cloudformation_link(t),
            "CidrBlock": self.cidr,
            "Tags": dict_to_tags(owned_tags(self, t.cloud, self.tags)),
        }
        if self.zone:
            properties["AvailabilityZone"] = self.zone
        t.add_resource(self, properties)
        return None
