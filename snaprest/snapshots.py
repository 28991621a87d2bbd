"""
SnapshotLifecycleManager - creates backup-volume snapshots and prunes them.

Retention runs in two passes:
- Rule A (every run): delete this source's snapshots older than
  daily_retention_days, whatever their backup type
- Rule B (weekly day only): of the full snapshots still present, keep the
  newest weekly_full_keep_count and delete the rest

Rule A always runs first and its deletions are final. A failed delete is
recorded in the RetentionReport and the pass moves on.
"""

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from snaprest.backup_type import WeeklyDayPredicate
from snaprest.clients.block_storage import BlockStorage
from snaprest.errors import SnapshotError
from snaprest.schemas import RetentionPolicy, RetentionReport, Snapshot
from snaprest.schemas.snapshot import (
    TAG_BACKUP_TYPE,
    TAG_DAY,
    TAG_NAME,
    TAG_SOURCE,
    TAG_SOURCE_IP,
    TAG_STANZA,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def snapshot_tags(
    source: str,
    source_ip: str,
    stanza: str,
    backup_type: str,
    taken_at: datetime,
) -> dict[str, str]:
    """Tags written on a new snapshot; Name doubles as the description."""
    name = f"pgbackrest-{source}-{stanza}-{backup_type}-{taken_at:%Y%m%d-%H%M%S}"
    return {
        TAG_NAME: name,
        TAG_BACKUP_TYPE: backup_type,
        TAG_STANZA: stanza,
        TAG_SOURCE: source,
        TAG_SOURCE_IP: source_ip,
        TAG_DAY: taken_at.strftime("%A"),
    }


class SnapshotLifecycleManager:
    """
    Creates and prunes snapshots for one backup source.

    Args:
        storage: Block-storage provider
        source: Value of the Source tag ("standby")
        source_ip: Value of the SourceIP tag (owner identity)
        stanza: Value of the Stanza tag
        is_weekly_day: Weekly-day predicate gating Rule B
        poll_interval: Seconds between describe calls while waiting
        sleep: Sleep function (injected by tests)
    """

    def __init__(
        self,
        storage: BlockStorage,
        source: str,
        source_ip: str,
        stanza: str,
        is_weekly_day: WeeklyDayPredicate,
        poll_interval: float = 15.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._storage = storage
        self.source = source
        self.source_ip = source_ip
        self.stanza = stanza
        self.is_weekly_day = is_weekly_day
        self.poll_interval = poll_interval
        self._sleep = sleep

    @property
    def tag_filter(self) -> dict[str, str]:
        """Tags identifying snapshots owned by this source."""
        return {
            TAG_SOURCE: self.source,
            TAG_SOURCE_IP: self.source_ip,
            TAG_STANZA: self.stanza,
        }

    def create(self, volume_id: str, tags: dict[str, str], wait: bool = False) -> str:
        """
        Create a snapshot of volume_id.

        Args:
            volume_id: Backup volume
            tags: Snapshot tags (see snapshot_tags)
            wait: Block until the provider reports the snapshot completed

        Returns:
            The snapshot id

        Raises:
            SnapshotError: If creation fails or the snapshot ends in error
        """
        description = tags.get(TAG_NAME, "")
        snapshot_id = self._storage.create_snapshot(volume_id, tags, description=description)

        if not wait:
            logger.info(f"Snapshot creation initiated: {snapshot_id} (completion in background)")
            return snapshot_id

        logger.info(f"Waiting for snapshot {snapshot_id} to complete...")
        self.wait_until_complete(snapshot_id)
        logger.info(f"Snapshot completed: {snapshot_id}")
        return snapshot_id

    def wait_until_complete(self, snapshot_id: str) -> None:
        """Poll until completed; no timeout of our own."""
        while True:
            state = self._storage.describe_snapshot(snapshot_id)
            if state == "completed":
                return
            if state == "error":
                raise SnapshotError(f"Snapshot {snapshot_id} ended in state 'error'")
            self._sleep(self.poll_interval)

    def _delete(self, snapshot: Snapshot, reason: str, report: RetentionReport) -> bool:
        logger.info(
            f"Deleting {reason} snapshot: {snapshot.id} ({snapshot.created_at:%Y-%m-%d})",
            extra={"step": "retention", "event": "snapshot_delete",
                   "metadata": {"snapshot_id": snapshot.id, "reason": reason}},
        )
        try:
            self._storage.delete_snapshot(snapshot.id)
        except SnapshotError as e:
            logger.warning(f"Failed to delete snapshot {snapshot.id}: {e}")
            report.failures.append((snapshot.id, str(e)))
            return False
        report.deleted.append(snapshot.id)
        return True

    def apply_retention(
        self,
        policy: RetentionPolicy,
        now: Optional[datetime] = None,
        today: Optional[date] = None,
    ) -> RetentionReport:
        """
        Apply the two-tier retention policy to this source's snapshots.

        Args:
            policy: Retention settings
            now: Reference time for the age cutoff (defaults to UTC now)
            today: Day used for the weekly-day check (defaults to now's date)

        Returns:
            RetentionReport with deleted ids and failures

        Raises:
            SnapshotError: If the snapshot listing itself fails
        """
        now = now or _utcnow()
        today = today or now.date()
        report = RetentionReport()

        snapshots = self._storage.list_snapshots(self.tag_filter)
        cutoff = now - timedelta(days=policy.daily_retention_days)

        # Rule A
        remaining: list[Snapshot] = []
        for snapshot in snapshots:
            if snapshot.created_at < cutoff:
                if not self._delete(snapshot, "expired", report):
                    remaining.append(snapshot)
            else:
                remaining.append(snapshot)

        # Rule B
        if self.is_weekly_day(today):
            fulls = sorted((s for s in remaining if s.is_full), key=lambda s: s.created_at)
            keep = policy.weekly_full_keep_count
            excess = fulls[:-keep] if keep else fulls
            for snapshot in excess:
                self._delete(snapshot, "old weekly", report)

        if report.deleted_count:
            logger.info(f"Cleaned up {report.deleted_count} old snapshots")
        else:
            logger.info("No old snapshots to clean up")
        if report.failures:
            logger.warning(f"{len(report.failures)} snapshot deletions failed")
        return report
