"""
Snapshot capture and restore for rollback.

A snapshot is a frozen deep copy of a resource's property document. Restore
writes a fresh copy of that document back through the cloud client, so the
snapshot can be restored any number of times and is never changed by it.
"""

import copy

from controlfix.collaborators import CloudResourceClient
from controlfix.logging_config import get_logger, log_with_context
from controlfix.metrics import StageTimer, metrics_collector
from controlfix.models import Snapshot

logger = get_logger(__name__)

TAGS_PROPERTY = "Tags"


def _extract_tags(configuration: dict[str, object]) -> dict[str, str]:
    raw = configuration.get(TAGS_PROPERTY)
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return {
            str(tag["Key"]): str(tag.get("Value", ""))
            for tag in raw
            if isinstance(tag, dict) and "Key" in tag
        }
    return {}


class SnapshotStore:
    """
    Captures and restores resource configuration.

    Attributes:
        cloud: Client used to read and write resource properties
    """

    def __init__(self, cloud: CloudResourceClient) -> None:
        self.cloud = cloud

    async def capture(self, resource_id: str, resource_type: str) -> Snapshot:
        """
        Read a resource and freeze its configuration.

        Raises:
            CloudResourceError: If the resource cannot be read
        """
        with metrics_collector.start_timer(StageTimer.SNAPSHOT_CAPTURE):
            configuration = await self.cloud.get_resource(resource_id, resource_type)

        snapshot = Snapshot(
            resource_id=resource_id,
            resource_type=resource_type,
            configuration=copy.deepcopy(configuration),
            tags=_extract_tags(configuration),
        )
        log_with_context(
            logger,
            "debug",
            "Captured snapshot",
            snapshot_id=snapshot.snapshot_id,
            resource_id=resource_id,
        )
        return snapshot

    async def restore(self, snapshot: Snapshot) -> None:
        """
        Write a snapshot's configuration back to its resource.

        Raises:
            CloudResourceError: If the resource cannot be updated
        """
        await self.cloud.update_resource(
            snapshot.resource_id,
            snapshot.resource_type,
            copy.deepcopy(snapshot.configuration),
        )
        log_with_context(
            logger,
            "info",
            "Restored snapshot",
            snapshot_id=snapshot.snapshot_id,
            resource_id=snapshot.resource_id,
            captured_at=snapshot.captured_at.isoformat(),
        )
