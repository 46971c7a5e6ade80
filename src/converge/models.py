"""Pydantic models for the cluster topology file.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Transformation into the task set the engine converges
"""

from __future__ import annotations

import ipaddress
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .awstasks.subnet import Subnet
from .awstasks.vpc import VPC
from .awstasks.vpngateway import VpnGateway
from .config import Lifecycle
from .lifecycle import LifecycleOverride
from .task import Owned, Ownership, Shared, Task

TaskName = Annotated[str, Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")]


def _validate_cidr(v: str | None) -> str | None:
    if v is None:
        return v
    try:
        network = ipaddress.ip_network(v, strict=True)
    except ValueError as e:
        raise ValueError(f"invalid CIDR block {v!r}: {e}") from e
    if network.version != 4:
        raise ValueError(f"only IPv4 CIDR blocks are supported: {v}")
    return v


class ResourceConfig(BaseModel):
    """Fields every resource entry carries."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: TaskName
    id: str | None = None
    # Tags used to discover a pre-existing resource
    shared_tags: dict[str, str] = Field(default_factory=dict, alias="sharedTags")
    tags: dict[str, str] = Field(default_factory=dict)
    lifecycle: Lifecycle = Lifecycle.SYNC

    @property
    def is_shared(self) -> bool:
        return self.id is not None or bool(self.shared_tags)

    def ownership(self) -> Ownership:
        if self.is_shared:
            return Shared(id=self.id, tags=dict(self.shared_tags))
        return Owned()

    def task_tags(self) -> dict[str, str] | None:
        # Shared resources are never retagged unless tags are asked for
        return dict(self.tags) if self.tags else None


class VpcConfig(ResourceConfig):
    """VPC configuration."""

    cidr: str | None = None

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str | None) -> str | None:
        return _validate_cidr(v)

    @model_validator(mode="after")
    def check_owned_has_cidr(self) -> VpcConfig:
        if not self.is_shared and not self.cidr:
            raise ValueError(f"vpc {self.name!r} is not shared and needs a cidr")
        return self


class SubnetConfig(ResourceConfig):
    """Subnet configuration."""

    cidr: str | None = None
    zone: str | None = None

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str | None) -> str | None:
        return _validate_cidr(v)

    @model_validator(mode="after")
    def check_owned_has_cidr(self) -> SubnetConfig:
        if not self.is_shared and not self.cidr:
            raise ValueError(f"subnet {self.name!r} is not shared and needs a cidr")
        return self


class VpnGatewayConfig(ResourceConfig):
    """Virtual private gateway configuration."""

    # Attach to the cluster VPC
    attach: bool = True


class ClusterSpec(BaseModel):
    """Desired network topology of one cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    cluster_name: str = Field(alias="clusterName")
    region: str
    vpc: VpcConfig
    subnets: list[SubnetConfig] = Field(default_factory=list)
    vpn_gateway: VpnGatewayConfig | None = Field(None, alias="vpnGateway")
    lifecycle_overrides: list[LifecycleOverride] = Field(
        default_factory=list, alias="lifecycleOverrides"
    )

    @model_validator(mode="after")
    def check_unique_names(self) -> ClusterSpec:
        names = [self.vpc.name] + [s.name for s in self.subnets]
        if self.vpn_gateway is not None:
            names.append(self.vpn_gateway.name)
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"resource names must be unique, duplicated: {duplicates}")
        return self

    @model_validator(mode="after")
    def check_subnets_inside_vpc(self) -> ClusterSpec:
        if not self.vpc.cidr:
            return self
        vpc_net = ipaddress.ip_network(self.vpc.cidr)
        for subnet in self.subnets:
            if subnet.cidr and not ipaddress.ip_network(subnet.cidr).subnet_of(vpc_net):
                raise ValueError(
                    f"subnet {subnet.name!r} cidr {subnet.cidr} is outside vpc cidr {self.vpc.cidr}"
                )
        return self

    def to_tasks(self) -> dict[str, Task]:
        """Build the task set for this topology, keyed by task name."""
        vpc = VPC(
            name=self.vpc.name,
            lifecycle=self.vpc.lifecycle,
            ownership=self.vpc.ownership(),
            cidr=self.vpc.cidr,
            tags=self.vpc.task_tags(),
        )
        tasks: dict[str, Task] = {vpc.name: vpc}

        for config in self.subnets:
            tasks[config.name] = Subnet(
                name=config.name,
                lifecycle=config.lifecycle,
                ownership=config.ownership(),
                vpc=vpc,
                cidr=config.cidr,
                zone=config.zone,
                tags=config.task_tags(),
            )

        if self.vpn_gateway is not None:
            config = self.vpn_gateway
            tasks[config.name] = VpnGateway(
                name=config.name,
                lifecycle=config.lifecycle,
                ownership=config.ownership(),
                vpc=vpc if config.attach else None,
                tags=config.task_tags(),
            )

        return tasks

    def summary(self) -> dict[str, Any]:
        return {
            "cluster": self.cluster_name,
            "region": self.region,
            "subnets": len(self.subnets),
            "vpn_gateway": self.vpn_gateway is not None,
        }
