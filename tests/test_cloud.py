"""Tests for the AWS cloud handle."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import EndpointConnectionError

from cloud_mock import MockEC2, client_error
from converge.cloud import (
    AWSCloud,
    AmbiguousMatchError,
    CloudError,
    ConflictError,
    ResourceNotFoundError,
    UnknownFilterError,
    dict_to_tags,
    filter_for,
    filters_for_tags,
    tags_to_dict,
    translate_client_error,
)

CIDR_FILTER = filter_for("cidr", "10.0.0.0/16")


class TestTranslateClientError:
    """Tests for mapping botocore errors onto cloud errors."""

    @pytest.mark.parametrize(
        "code,expected",
        [
            ("InvalidVpcID.NotFound", ResourceNotFoundError),
            ("InvalidVpnGatewayID.NotFound", ResourceNotFoundError),
            ("VpnGatewayAttachmentLimitExceeded", ConflictError),
            ("InvalidVpnGatewayAttachment.NotFound", ConflictError),
            ("DependencyViolation", ConflictError),
            ("UnauthorizedOperation", CloudError),
        ],
    )
    def test_codes(self, code: str, expected: type[CloudError]) -> None:
        error = translate_client_error("op", client_error("Op", code, "message"))

        assert type(error) is expected
        assert error.code == code
        assert str(error) == "op failed: message"

    def test_unknown_filter(self) -> None:
        error = translate_client_error(
            "describe_vpcs",
            client_error("DescribeVpcs", "InvalidParameterValue", "unknown filter name: 'x'"),
        )

        assert isinstance(error, UnknownFilterError)

    def test_other_invalid_parameter(self) -> None:
        error = translate_client_error(
            "create_vpc",
            client_error("CreateVpc", "InvalidParameterValue", "bad CIDR"),
        )

        assert type(error) is CloudError


class TestTagHelpers:
    """Tests for tag conversion helpers."""

    def test_tags_to_dict(self) -> None:
        assert tags_to_dict([{"Key": "Name", "Value": "a"}, {"Key": "empty"}]) == {
            "Name": "a",
            "empty": "",
        }
        assert tags_to_dict(None) == {}

    def test_dict_to_tags_sorted(self) -> None:
        assert dict_to_tags({"b": "2", "a": "1"}) == [
            {"Key": "a", "Value": "1"},
            {"Key": "b", "Value": "2"},
        ]

    def test_filters(self) -> None:
        assert filter_for("vpc-id", "vpc-1") == {"Name": "vpc-id", "Values": ["vpc-1"]}
        assert filters_for_tags({"Name": "a", "Env": "prod"}) == [
            {"Name": "tag:Env", "Values": ["prod"]},
            {"Name": "tag:Name", "Values": ["a"]},
        ]


class TestAWSCloud:
    """Tests for AWSCloud."""

    def test_call_translates_errors(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        ec2.fail_next("create_vpc", "VpcLimitExceeded", "too many VPCs")

        with pytest.raises(CloudError, match="too many VPCs") as exc_info:
            cloud.call("create_vpc", CidrBlock="10.0.0.0/16")

        assert exc_info.value.code == "VpcLimitExceeded"
        assert ec2.vpcs == {}

    def test_call_wraps_transport_errors(self) -> None:
        client = MagicMock()
        client.describe_vpcs.side_effect = EndpointConnectionError(endpoint_url="https://ec2")
        cloud = AWSCloud("us-east-1", ec2_client=client)

        with pytest.raises(CloudError, match="describe_vpcs failed"):
            cloud.call("describe_vpcs")

    def test_find_one(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        ec2.create_vpc(CidrBlock="10.0.0.0/16")

        vpc = cloud.find_one("describe_vpcs", "Vpcs", "VPC", Filters=[CIDR_FILTER])

        assert vpc["VpcId"] == "vpc-1"
        assert cloud.find_one(
            "describe_vpcs", "Vpcs", "VPC", Filters=[filter_for("cidr", "10.9.0.0/16")]
        ) is None

    def test_find_one_ambiguous(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        ec2.create_vpc(CidrBlock="10.0.0.0/16")
        ec2.create_vpc(CidrBlock="10.0.0.0/16")

        with pytest.raises(AmbiguousMatchError, match="found 2 VPC"):
            cloud.find_one("describe_vpcs", "Vpcs", "VPC", Filters=[CIDR_FILTER])

    def test_create_tags(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]

        cloud.create_tags(vpc_id, {"Name": "main"})
        cloud.create_tags(vpc_id, {})

        assert ec2.tags_of(vpc_id) == {"Name": "main"}
        assert len(ec2.calls_to("create_tags")) == 1

    def test_cluster_tags(self) -> None:
        assert AWSCloud("us-east-1", "prod.example.com").cluster_tags() == {
            "kubernetes.io/cluster/prod.example.com": "owned"
        }
        assert AWSCloud("us-east-1").cluster_tags() == {}

    def test_client_created_lazily(self, monkeypatch: pytest.MonkeyPatch) -> None:
        created = MagicMock()
        monkeypatch.setattr("converge.cloud.boto3.client", created)
        cloud = AWSCloud("eu-west-1")

        created.assert_not_called()
        assert cloud.ec2 is created.return_value
        created.assert_called_once_with("ec2", region_name="eu-west-1")


class TestMockEC2:
    """Tests for the EC2 test double itself."""

    def test_ids_share_one_counter(self, ec2: MockEC2) -> None:
        vpc = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]
        vgw = ec2.create_vpn_gateway(Type="ipsec.1")["VpnGateway"]

        assert vpc["VpcId"] == "vpc-1"
        assert vgw["VpnGatewayId"] == "vgw-2"

    def test_unknown_filter_name(self, cloud: AWSCloud) -> None:
        with pytest.raises(UnknownFilterError, match="unknown filter name: 'owner'"):
            cloud.describe("describe_vpcs", "Vpcs", Filters=[filter_for("owner", "me")])

    def test_unknown_filter_name_on_empty_store(self, cloud: AWSCloud) -> None:
        with pytest.raises(UnknownFilterError, match="unknown filter name: 'bogus'"):
            cloud.describe(
                "describe_vpn_gateways", "VpnGateways", Filters=[filter_for("bogus", "x")]
            )

    def test_unknown_filter_name_after_non_matching_filter(
        self, cloud: AWSCloud, ec2: MockEC2
    ) -> None:
        ec2.create_vpn_gateway(Type="ipsec.1")
        filters = [filter_for("tag:Name", "nomatch"), filter_for("bogus", "x")]

        with pytest.raises(UnknownFilterError, match="unknown filter name: 'bogus'"):
            cloud.describe("describe_vpn_gateways", "VpnGateways", Filters=filters)

    def test_unknown_vpc_id(self, cloud: AWSCloud) -> None:
        with pytest.raises(ResourceNotFoundError):
            cloud.describe("describe_vpcs", "Vpcs", VpcIds=["vpc-99"])

    def test_unknown_vpn_gateway_id_is_empty(self, cloud: AWSCloud) -> None:
        gateways = cloud.describe("describe_vpn_gateways", "VpnGateways", VpnGatewayIds=["vgw-99"])

        assert gateways == []

    def test_attach_unknown_gateway(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]

        with pytest.raises(ResourceNotFoundError, match="VpnGateway not found"):
            cloud.call("attach_vpn_gateway", VpcId=vpc_id, VpnGatewayId="vgw-99")

    def test_double_attach_conflicts(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]
        vgw_id = ec2.create_vpn_gateway()["VpnGateway"]["VpnGatewayId"]
        cloud.call("attach_vpn_gateway", VpcId=vpc_id, VpnGatewayId=vgw_id)

        with pytest.raises(ConflictError):
            cloud.call("attach_vpn_gateway", VpcId=vpc_id, VpnGatewayId=vgw_id)

    def test_detach_without_attachment(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]
        vgw_id = ec2.create_vpn_gateway()["VpnGateway"]["VpnGatewayId"]

        with pytest.raises(ConflictError, match="Attachment to VPC not found"):
            cloud.call("detach_vpn_gateway", VpcId=vpc_id, VpnGatewayId=vgw_id)

    def test_tag_filters(self, cloud: AWSCloud, ec2: MockEC2) -> None:
        vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]
        ec2.create_vpc(CidrBlock="10.1.0.0/16")
        ec2.create_tags(Resources=[vpc_id], Tags=[{"Key": "Name", "Value": "main"}])

        filters = filters_for_tags({"Name": "main"})

        matches = cloud.describe("describe_vpcs", "Vpcs", Filters=filters)

        assert [vpc["VpcId"] for vpc in matches] == [vpc_id]
        assert matches[0]["Tags"] == [{"Key": "Name", "Value": "main"}]
