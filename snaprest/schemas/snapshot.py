"""
Snapshot schemas - EBS snapshots of the backup volume and their retention.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# Tag keys written on every snapshot we create
TAG_NAME = "Name"
TAG_BACKUP_TYPE = "BackupType"
TAG_STANZA = "Stanza"
TAG_SOURCE = "Source"
TAG_SOURCE_IP = "SourceIP"
TAG_DAY = "Day"


@dataclass(frozen=True)
class Snapshot:
    """
    A point-in-time snapshot of the backup volume.

    Attributes:
        id: Provider snapshot id (snap-...)
        volume_id: Volume the snapshot was taken from
        created_at: Provider start time (timezone-aware)
        state: Provider state (pending, completed, error)
        tags: Snapshot tags (Source, BackupType, Stanza, Day, ...)
    """
    id: str
    volume_id: str
    created_at: datetime
    state: str = "pending"
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def backup_type(self) -> Optional[str]:
        return self.tags.get(TAG_BACKUP_TYPE)

    @property
    def stanza(self) -> Optional[str]:
        return self.tags.get(TAG_STANZA)

    @property
    def source(self) -> Optional[str]:
        return self.tags.get(TAG_SOURCE)

    @property
    def day_of_week(self) -> Optional[str]:
        return self.tags.get(TAG_DAY)

    @property
    def is_full(self) -> bool:
        return self.backup_type == "full"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "id": self.id,
            "volume_id": self.volume_id,
            "created_at": self.created_at.isoformat(),
            "state": self.state,
            "tags": dict(self.tags),
        }


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Two-tier snapshot retention.

    Attributes:
        daily_retention_days: Snapshots older than this are deleted (any type)
        weekly_full_keep_count: Full snapshots kept by the weekly pass
    """
    daily_retention_days: int = 7
    weekly_full_keep_count: int = 4

    def __post_init__(self):
        if self.daily_retention_days < 0:
            raise ValueError("daily_retention_days must be >= 0")
        if self.weekly_full_keep_count < 0:
            raise ValueError("weekly_full_keep_count must be >= 0")


@dataclass
class RetentionReport:
    """Result of one retention pass."""
    deleted: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted": list(self.deleted),
            "deleted_count": self.deleted_count,
            "failures": [{"snapshot_id": sid, "error": msg} for sid, msg in self.failures],
        }
