"""Virtual private gateway task.

VPN gateways are usually shared: an existing gateway, owned by whoever set
up the VPN, is attached to the cluster's VPC. A shared gateway is never
created, renamed or retagged; the only change the engine makes to it is
attaching it to the VPC it is declared against.

An owned gateway is created with the cluster's tags and attached to its
VPC on creation. Moving an owned gateway to another VPC detaches it first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from ..cloud import dict_to_tags, tags_to_dict
from ..diff import ChangeSet, EqualityPolicy
from ..task import ResourceRef, Task
from ..validation import cannot_change_field
from .base import check_shared_changes, lookup, owned_tags, require_existing, warn_undiscovered
from .vpc import VPC

if TYPE_CHECKING:
    from ..cloud import AWSCloud
    from ..context import ReconciliationContext
    from ..targets import CloudFormationTarget, DirectTarget, TerraformTarget

logger = logging.getLogger(__name__)

GATEWAY_TYPE = "ipsec.1"
# Attachments in these states still hold the VPC slot
LIVE_ATTACHMENT_STATES = frozenset({"attaching", "attached"})


def attached_vpc_id(vgw: dict[str, Any]) -> str | None:
    """Id of the VPC a described gateway is attached to, if any."""
    for attachment in vgw.get("VpcAttachments") or []:
        if attachment.get("State", "attached") in LIVE_ATTACHMENT_STATES:
            return attachment["VpcId"]
    return None


@dataclass(eq=False, kw_only=True)
class VpnGateway(Task):
    """An EC2 virtual private gateway, optionally attached to a VPC."""

    vpc: VPC | ResourceRef | None = None
    tags: dict[str, str] | None = None

    equality: ClassVar[dict[str, EqualityPolicy]] = {"tags": EqualityPolicy.SUBSET}
    terraform_type: ClassVar[str] = "aws_vpn_gateway"
    cloudformation_type: ClassVar[str] = "AWS::EC2::VPNGateway"

    terraform_attachment_type: ClassVar[str] = "aws_vpn_gateway_attachment"
    cloudformation_attachment_type: ClassVar[str] = "AWS::EC2::VPCGatewayAttachment"

    def dependencies(self) -> list[Task]:
        return [self.vpc] if isinstance(self.vpc, Task) else []

    def find(self, ctx: ReconciliationContext) -> VpnGateway | None:
        cloud = ctx.require_cloud()
        vgw = lookup(self, cloud, "describe_vpn_gateways", "VpnGateways", "VpnGatewayIds")
        if vgw is None:
            return None

        vpc_id = attached_vpc_id(vgw)
        logger.debug(
            "Found VPN gateway",
            extra={"task": str(self), "vgw_id": vgw["VpnGatewayId"], "vpc_id": vpc_id},
        )
        return self.observed(
            vgw["VpnGatewayId"],
            vpc=ResourceRef(vpc_id) if vpc_id else None,
            tags=tags_to_dict(vgw.get("Tags")),
        )

    def check_changes(self, actual: Task | None, changes: ChangeSet) -> None:
        check_shared_changes(self, actual, changes, mutable=frozenset({"vpc"}))
        if (
            actual is not None
            and self.is_shared
            and "vpc" in changes
            and getattr(actual, "vpc", None) is not None
        ):
            # A shared gateway attached elsewhere belongs to someone else
            raise cannot_change_field("vpc", self)

    def _attach(self, cloud: AWSCloud, vgw_id: str, vpc_id: str) -> None:
        cloud.call("attach_vpn_gateway", VpcId=vpc_id, VpnGatewayId=vgw_id)
        logger.info(
            "Attached VPN gateway",
            extra={"task": str(self), "vgw_id": vgw_id, "vpc_id": vpc_id},
        )

    def render_direct(
        self, t: DirectTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        cloud = t.cloud
        if self.is_shared:
            vgw_id = require_existing(self, actual).id
        elif actual is None:
            response = cloud.call("create_vpn_gateway", Type=GATEWAY_TYPE)
            vgw_id = response["VpnGateway"]["VpnGatewayId"]
            cloud.create_tags(vgw_id, owned_tags(self, cloud, self.tags))
            logger.info("Created VPN gateway", extra={"task": str(self), "vgw_id": vgw_id})
        else:
            vgw_id = actual.id
            if "tags" in changes:
                cloud.create_tags(vgw_id, changes["tags"])

        if "vpc" in changes and self.vpc is not None:
            previous = getattr(actual, "vpc", None)
            if isinstance(previous, ResourceRef):
                cloud.call("detach_vpn_gateway", VpcId=previous.id, VpnGatewayId=vgw_id)
                logger.info(
                    "Detached VPN gateway",
                    extra={"task": str(self), "vgw_id": vgw_id, "vpc_id": previous.id},
                )
            self._attach(cloud, vgw_id, t.resolved_id(self.vpc, required=True))

        return vgw_id

    def render_terraform(
        self, t: TerraformTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        if self.is_shared:
            vgw_id = warn_undiscovered(self, actual)
            if vgw_id is not None and "vpc" in changes and self.vpc is not None:
                t.add_resource(
                    self,
                    {"vpc_id": self.vpc.terraform_link(t), "vpn_gateway_id": vgw_id},
                    resource_type=self.terraform_attachment_type,
                )
            return vgw_id

        body: dict[str, Any] = {"tags": owned_tags(self, t.cloud, self.tags)}
        if self.vpc is not None:
            body["vpc_id"] = self.vpc.terraform_link(t)
        t.add_resource(self, body)
        return None

    def render_cloudformation(
        self, t: CloudFormationTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        if self.is_shared:
            vgw_id = warn_undiscovered(self, actual)
            if vgw_id is not None and "vpc" in changes and self.vpc is not None:
                t.add_resource(
                    self,
                    {"VpcId": self.vpc.cloudformation_link(t), "VpnGatewayId": vgw_id},
                    resource_type=self.cloudformation_attachment_type,
                )
            return vgw_id

        t.add_resource(self, {
            "Type": GATEWAY_TYPE,
            "Tags": dict_to_tags(owned_tags(self, t.cloud, self.tags)),
        })
        if self.vpc is not None:
            t.add_resource(
                self,
                {
                    "VpcId": self.vpc.cloudformation_link(t),
                    "VpnGatewayId": t.ref(self.cloudformation_type, self.name),
                },
                resource_type=self.cloudformation_attachment_type,
            )
        return None
