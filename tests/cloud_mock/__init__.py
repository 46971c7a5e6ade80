"""EC2 API mock for integration testing.

Provides an in-memory implementation of the EC2 client methods the
resource tasks call, so convergence runs can be tested end to end without
AWS connectivity.

Key Features:
- Deterministic identifiers from one shared counter (vpc-1, vgw-2, ...)
- Tags stored per resource type and id
- Describe filters with an explicit "unknown filter name" error
- Call log for asserting on exactly which mutations were made
- Error injection for testing failure scenarios

Usage:
    from cloud_mock import build_mock_cloud

    cloud, ec2 = build_mock_cloud()
    ctx = ReconciliationContext(tasks, DirectTarget(cloud), cloud)
    ctx.run()

    assert ec2.calls_to("attach_vpn_gateway") == [...]
"""

from __future__ import annotations

from converge.cloud import AWSCloud

from .ec2 import MockEC2, client_error, sort_tags

DEFAULT_REGION = "us-east-1"
DEFAULT_CLUSTER = "cluster.example.com"


def build_mock_cloud(
    region: str = DEFAULT_REGION,
    cluster_name: str = DEFAULT_CLUSTER,
    ec2: MockEC2 | None = None,
) -> tuple[AWSCloud, MockEC2]:
    """Build a cloud handle backed by a MockEC2."""
    ec2 = ec2 if ec2 is not None else MockEC2()
    return AWSCloud(region, cluster_name, ec2_client=ec2), ec2


__all__ = [
    "DEFAULT_CLUSTER",
    "DEFAULT_REGION",
    "MockEC2",
    "build_mock_cloud",
    "client_error",
    "sort_tags",
]
