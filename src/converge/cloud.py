"""AWS cloud handle used by the resource plugins.

The engine itself never talks to the network. Plugins receive an AWSCloud,
which wraps a boto3 EC2 client (or any object exposing the same methods,
such as the in-memory test double) and turns botocore errors into the
error taxonomy the engine reports:

- ResourceNotFoundError: the resource named in the call does not exist
- ConflictError: the call conflicts with current state
- UnknownFilterError: a describe call used a filter the backend rejects
- AmbiguousMatchError: a lookup meant to find one resource found several
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

CLUSTER_TAG_PREFIX = "kubernetes.io/cluster/"

# EC2 error codes that mean "state conflicts with the request"
CONFLICT_ERROR_CODES = frozenset({
    "DependencyViolation",
    "IncorrectState",
    "InvalidVpnGatewayAttachment.NotFound",
    "Resource.AlreadyAssociated",
    "VpnGatewayAttachmentLimitExceeded",
})


class CloudError(Exception):
    """Raised when a cloud API call fails."""

    def __init__(self, message: str, code: str = "") -> None:
        self.code = code
        super().__init__(message)


class ResourceNotFoundError(CloudError):
    """Raised when the resource a call names does not exist."""

    pass


class ConflictError(CloudError):
    """Raised when a call conflicts with the resource's current state."""

    pass


class UnknownFilterError(CloudError):
    """Raised when a describe call uses a filter name the backend rejects."""

    pass


class AmbiguousMatchError(CloudError):
    """Raised when a lookup for exactly one resource matches several."""

    pass


def translate_client_error(operation: str, error: ClientError) -> CloudError:
    """Map a botocore ClientError onto the cloud error taxonomy."""
    details = error.response.get("Error", {})
    code = details.get("Code", "")
    message = f"{operation} failed: {details.get('Message') or error}"

    if code in CONFLICT_ERROR_CODES:
        return ConflictError(message, code)
    if code.endswith(".NotFound"):
        return ResourceNotFoundError(message, code)
    if code == "InvalidParameterValue" and "filter" in message.lower():
        return UnknownFilterError(message, code)
    return CloudError(message, code)


def tags_to_dict(tags: Iterable[Mapping[str, str]] | None) -> dict[str, str]:
    """Convert EC2 ``[{"Key": k, "Value": v}]`` tags to a plain dict."""
    return {tag["Key"]: tag.get("Value", "") for tag in tags or []}


def dict_to_tags(tags: Mapping[str, str]) -> list[dict[str, str]]:
    """Convert a plain dict to EC2 tags, sorted by key."""
    return [{"Key": key, "Value": tags[key]} for key in sorted(tags)]


def filter_for(name: str, *values: str) -> dict[str, Any]:
    """Build one EC2 describe filter."""
    return {"Name": name, "Values": list(values)}


def filters_for_tags(tags: Mapping[str, str]) -> list[dict[str, Any]]:
    """Build ``tag:<key>`` filters matching every tag in ``tags``."""
    return [filter_for(f"tag:{key}", tags[key]) for key in sorted(tags)]


class AWSCloud:
    """Handle on the EC2 API for one region and cluster.

    Thread Safety:
        boto3 clients are safe to share between threads, and the handle
        holds no other mutable state once the client exists.
    """

    def __init__(
        self,
        region: str,
        cluster_name: str = "",
        ec2_client: Any | None = None,
    ) -> None:
        """Initialize the cloud handle.

        Args:
            region: AWS region.
            cluster_name: Cluster name used for ownership tags.
            ec2_client: Pre-built EC2 client. Created with boto3 when omitted.
        """
        self.region = region
        self.cluster_name = cluster_name
        self._ec2 = ec2_client

    @property
    def ec2(self) -> Any:
        """The EC2 client, created on first use."""
        if self._ec2 is None:
            self._ec2 = boto3.client("ec2", region_name=self.region)
        return self._ec2

    def call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        """Invoke an EC2 operation by its boto3 method name.

        Raises:
            CloudError: Or one of its subclasses, translated from botocore.
        """
        method = getattr(self.ec2, operation)
        logger.debug("EC2 call", extra={"operation": operation, "region": self.region})
        try:
            return method(**kwargs)
        except ClientError as e:
            raise translate_client_error(operation, e) from e
        except BotoCoreError as e:
            raise CloudError(f"{operation} failed: {e}") from e

    def describe(self, operation: str, result_key: str, **kwargs: Any) -> list[dict[str, Any]]:
        """Call a describe operation and return its result list."""
        response = self.call(operation, **kwargs)
        return list(response.get(result_key) or [])

    def find_one(
        self, operation: str, result_key: str, what: str, **kwargs: Any
    ) -> dict[str, Any] | None:
        """Describe and return the single match, or None.

        Raises:
            AmbiguousMatchError: If several resources match.
        """
        matches = self.describe(operation, result_key, **kwargs)
        if not matches:
            return None
        if len(matches) != 1:
            raise AmbiguousMatchError(f"found {len(matches)} {what} matching {kwargs}")
        return matches[0]

    def create_tags(self, resource_id: str, tags: Mapping[str, str]) -> None:
        """Add or overwrite tags on a resource."""
        if not tags:
            return
        self.call("create_tags", Resources=[resource_id], Tags=dict_to_tags(tags))
        logger.info(
            "Tagged resource",
            extra={"resource_id": resource_id, "tag_keys": sorted(tags)},
        )

    def cluster_tags(self) -> dict[str, str]:
        """Tags marking a resource as owned by this cluster."""
        if not self.cluster_name:
            return {}
        return {f"{CLUSTER_TAG_PREFIX}{self.cluster_name}": "owned"}
