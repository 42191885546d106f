"""
AWS Cloud Control API implementation of CloudResourceClient.

Cloud Control exposes every CloudFormation resource type through one
generic get/update API, which matches the read-modify-write model the
engine uses: read the full property document, transform it, write it back.
Updates are sent as RFC 6902 JSON patches computed from the difference
between the current and desired top-level properties, and each update
waits for the asynchronous request to finish.

Usage:
    from controlfix.cloud_control import CloudControlResourceClient

    client = CloudControlResourceClient(region="us-west-2")
    props = await client.get_resource("my-bucket", "AWS::S3::Bucket")
"""

import asyncio
import json
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from controlfix.errors import CloudResourceError
from controlfix.logging_config import get_logger, log_with_context

logger = get_logger(__name__)

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "ServiceInternalErrorException",
        "NetworkFailureException",
        "ConcurrentOperationException",
        "ResourceConflictException",
    }
)


def _pointer(key: str) -> str:
    return "/" + key.replace("~", "~0").replace("/", "~1")


def build_patch_document(
    current: dict[str, Any],
    desired: dict[str, Any],
) -> list[dict[str, Any]]:
    """
    Compute the JSON patch that turns ``current`` into ``desired``.

    Only top-level properties are compared; a changed nested value is
    replaced as a whole.

    Example:
        >>> build_patch_document({"A": 1, "B": 2}, {"A": 3, "C": 4})
        [{'op': 'replace', 'path': '/A', 'value': 3}, {'op': 'add', 'path': '/C', 'value': 4}, {'op': 'remove', 'path': '/B'}]
    """
    operations: list[dict[str, Any]] = []
    for key, value in desired.items():
        if key not in current:
            operations.append({"op": "add", "path": _pointer(key), "value": value})
        elif current[key] != value:
            operations.append({"op": "replace", "path": _pointer(key), "value": value})
    for key in current:
        if key not in desired:
            operations.append({"op": "remove", "path": _pointer(key)})
    return operations


class CloudControlResourceClient:
    """
    Reads and updates resources through the AWS Cloud Control API.

    Attributes:
        client: boto3 cloudcontrol client
        wait_delay_seconds: Poll interval while an update is in flight
        wait_max_attempts: Polls before an update is reported as timed out
    """

    def __init__(
        self,
        region: str = "us-east-1",
        wait_delay_seconds: int = 5,
        wait_max_attempts: int = 60,
    ) -> None:
        self.client = boto3.client(service_name="cloudcontrol", region_name=region)
        self.wait_delay_seconds = wait_delay_seconds
        self.wait_max_attempts = wait_max_attempts

    async def get_resource(self, resource_id: str, resource_type: str) -> dict[str, Any]:
        """
        Read a resource's current properties.

        Args:
            resource_id: Cloud Control primary identifier
            resource_type: CloudFormation type name (e.g., AWS::S3::Bucket)

        Returns:
            Property document as a dictionary

        Raises:
            CloudResourceError: If the resource cannot be read
        """
        try:
            response = await asyncio.to_thread(
                self.client.get_resource,
                TypeName=resource_type,
                Identifier=resource_id,
            )
        except ClientError as e:
            raise self._error(e, resource_id, "get") from e
        except BotoCoreError as e:
            raise CloudResourceError(
                f"Failed to read {resource_id}: {e}",
                resource_id=resource_id,
                operation="get",
                retryable=True,
            ) from e

        properties = json.loads(response["ResourceDescription"]["Properties"])
        log_with_context(
            logger,
            "debug",
            "Read resource properties",
            resource_id=resource_id,
            resource_type=resource_type,
            property_count=len(properties),
        )
        return properties

    async def update_resource(
        self,
        resource_id: str,
        resource_type: str,
        properties: dict[str, Any],
    ) -> None:
        """
        Write a full property document back to a resource.

        The current document is re-read so only the differing top-level
        properties are patched. Returns once Cloud Control reports success.

        Raises:
            CloudResourceError: If the update is rejected, fails or times out
        """
        current = await self.get_resource(resource_id, resource_type)
        patch = build_patch_document(current, properties)
        if not patch:
            log_with_context(
                logger,
                "debug",
                "Resource already matches desired properties",
                resource_id=resource_id,
            )
            return

        try:
            response = await asyncio.to_thread(
                self.client.update_resource,
                TypeName=resource_type,
                Identifier=resource_id,
                PatchDocument=json.dumps(patch),
            )
            request_token = response["ProgressEvent"]["RequestToken"]
            waiter = self.client.get_waiter("resource_request_success")
            await asyncio.to_thread(
                waiter.wait,
                RequestToken=request_token,
                WaiterConfig={
                    "Delay": self.wait_delay_seconds,
                    "MaxAttempts": self.wait_max_attempts,
                },
            )
        except ClientError as e:
            raise self._error(e, resource_id, "update") from e
        except WaiterError as e:
            raise CloudResourceError(
                f"Update of {resource_id} did not complete: {e}",
                resource_id=resource_id,
                operation="update",
                retryable=False,
            ) from e
        except BotoCoreError as e:
            raise CloudResourceError(
                f"Failed to update {resource_id}: {e}",
                resource_id=resource_id,
                operation="update",
                retryable=True,
            ) from e

        log_with_context(
            logger,
            "info",
            "Updated resource properties",
            resource_id=resource_id,
            resource_type=resource_type,
            patched_paths=[op["path"] for op in patch],
        )

    @staticmethod
    def _error(e: ClientError, resource_id: str, operation: str) -> CloudResourceError:
        code = e.response.get("Error", {}).get("Code", "Unknown")
        message = e.response.get("Error", {}).get("Message", str(e))
        log_with_context(
            logger,
            "error",
            "Cloud Control request failed",
            resource_id=resource_id,
            operation=operation,
            error_code=code,
        )
        return CloudResourceError(
            f"Cloud Control {operation} failed for {resource_id}: {message}",
            resource_id=resource_id,
            operation=operation,
            error_code=code,
            retryable=code in RETRYABLE_ERROR_CODES,
        )
