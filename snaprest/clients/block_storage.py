"""
Cloud block-storage client (EBS snapshots through boto3).

Every provider error is re-raised as SnapshotError so the lifecycle manager
can decide what is fatal (create) and what is not (retention deletes).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from snaprest.errors import SnapshotError
from snaprest.schemas import Snapshot

logger = logging.getLogger(__name__)


class BlockStorage(ABC):
    """Interface to the block-storage provider."""

    @abstractmethod
    def create_snapshot(self, volume_id: str, tags: dict[str, str], description: str = "") -> str:
        """Start a snapshot of volume_id and return its id."""
        pass

    @abstractmethod
    def describe_snapshot(self, snapshot_id: str) -> str:
        """Return the snapshot state (pending, completed, error)."""
        pass

    @abstractmethod
    def delete_snapshot(self, snapshot_id: str) -> None:
        pass

    @abstractmethod
    def list_snapshots(self, tag_filters: dict[str, str]) -> list[Snapshot]:
        """List our snapshots whose tags match every filter."""
        pass

    @abstractmethod
    def find_volume(self, instance_id: str, devices: Sequence[str]) -> Optional[str]:
        """Find the volume attached to instance_id at one of devices."""
        pass

    @abstractmethod
    def verify_credentials(self) -> str:
        """Return the caller identity, raising SnapshotError without usable credentials."""
        pass


def _tags_to_dict(tags: Optional[list[dict[str, str]]]) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in tags or [] if "Key" in t}


def _snapshot_from_api(raw: dict[str, Any]) -> Snapshot:
    created_at = raw.get("StartTime")
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    if created_at is None:
        created_at = datetime.now(timezone.utc)
    elif created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Snapshot(
        id=raw["SnapshotId"],
        volume_id=raw.get("VolumeId", ""),
        created_at=created_at,
        state=raw.get("State", "pending"),
        tags=_tags_to_dict(raw.get("Tags")),
    )


class Ec2BlockStorage(BlockStorage):
    """
    EBS implementation backed by the boto3 EC2 client.

    Args:
        region: AWS region name
        client: Pre-built EC2 client (tests inject a MagicMock)
        sts_client: Pre-built STS client used for the credentials check
    """

    def __init__(self, region: Optional[str] = None, client: Any = None, sts_client: Any = None):
        self.region = region
        self._ec2 = client if client is not None else self._client("ec2")
        self._sts = sts_client

    def _client(self, service: str) -> Any:
        import boto3

        kwargs: dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        return boto3.client(service, **kwargs)

    def _call(self, action: str, target: str, fn, **kwargs) -> Any:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return fn(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise SnapshotError(f"{action} failed for {target}: {e}", host=self.region) from e

    def create_snapshot(self, volume_id: str, tags: dict[str, str], description: str = "") -> str:
        response = self._call(
            "create-snapshot",
            volume_id,
            self._ec2.create_snapshot,
            VolumeId=volume_id,
            Description=description,
            TagSpecifications=[{
                "ResourceType": "snapshot",
                "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
            }],
        )
        snapshot_id = response.get("SnapshotId")
        if not snapshot_id:
            raise SnapshotError(f"create-snapshot for {volume_id} returned no SnapshotId", host=self.region)
        logger.info(f"Snapshot created: {snapshot_id} (volume {volume_id})")
        return snapshot_id

    def describe_snapshot(self, snapshot_id: str) -> str:
        response = self._call(
            "describe-snapshots",
            snapshot_id,
            self._ec2.describe_snapshots,
            SnapshotIds=[snapshot_id],
        )
        snapshots = response.get("Snapshots", [])
        if not snapshots:
            raise SnapshotError(f"Snapshot {snapshot_id} not found", host=self.region)
        return snapshots[0].get("State", "pending")

    def delete_snapshot(self, snapshot_id: str) -> None:
        self._call("delete-snapshot", snapshot_id, self._ec2.delete_snapshot, SnapshotId=snapshot_id)
        logger.info(f"Deleted snapshot: {snapshot_id}")

    def list_snapshots(self, tag_filters: dict[str, str]) -> list[Snapshot]:
        filters = [{"Name": f"tag:{k}", "Values": [v]} for k, v in tag_filters.items()]
        paginator = self._ec2.get_paginator("describe_snapshots")
        snapshots: list[Snapshot] = []

        def _collect() -> None:
            for page in paginator.paginate(OwnerIds=["self"], Filters=filters):
                snapshots.extend(_snapshot_from_api(raw) for raw in page.get("Snapshots", []))

        self._call("describe-snapshots", "snapshot listing", _collect)
        return snapshots

    def find_volume(self, instance_id: str, devices: Sequence[str]) -> Optional[str]:
        for device in devices:
            response = self._call(
                "describe-volumes",
                f"{instance_id}:{device}",
                self._ec2.describe_volumes,
                Filters=[
                    {"Name": "attachment.instance-id", "Values": [instance_id]},
                    {"Name": "attachment.device", "Values": [device]},
                ],
            )
            volumes = response.get("Volumes", [])
            if volumes:
                volume_id = volumes[0]["VolumeId"]
                logger.info(f"Found backup volume {volume_id} at {device} on {instance_id}")
                return volume_id
            logger.info(f"No volume attached at {device} on {instance_id}")
        return None

    def verify_credentials(self) -> str:
        if self._sts is None:
            self._sts = self._client("sts")
        response = self._call("get-caller-identity", "AWS credentials", self._sts.get_caller_identity)
        arn = response.get("Arn", "")
        logger.info(f"AWS identity: {arn}")
        return arn
