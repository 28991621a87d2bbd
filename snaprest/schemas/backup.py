"""
Backup schemas - backup types, modes, and the backup tool catalog.

BackupType is what a run actually does; BackupMode is what the operator asked
for. The BackupCatalog is a read-only view of `pgbackrest info --output=json`
for one stanza.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class BackupType(str, Enum):
    """Backup type chosen for a run."""
    FULL = "full"
    INCR = "incr"
    SKIP = "skip"


class BackupMode(str, Enum):
    """
    Operator-requested backup mode.

    AUTO lets the selector decide; SETUP is used for the first backup taken
    during setup and always resolves to a full backup.
    """
    AUTO = "auto"
    SETUP = "setup"
    FULL = "full"
    INCR = "incr"
    SKIP = "skip"

    @classmethod
    def from_string(cls, value: str) -> "BackupMode":
        """Parse a mode name, accepting 'incremental' as an alias for 'incr'."""
        normalized = value.strip().lower()
        if normalized == "incremental":
            normalized = "incr"
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown backup mode '{value}' (expected one of: {valid})")


@dataclass(frozen=True)
class Backup:
    """A single backup set in the backup tool's catalog."""
    type: str
    label: str
    stanza: str
    taken_at: Optional[datetime] = None

    @property
    def is_full(self) -> bool:
        return self.type == BackupType.FULL.value


@dataclass(frozen=True)
class BackupCatalog:
    """
    Catalog entries for one stanza, oldest first.

    Attributes:
        stanza: Stanza name
        backups: Backup sets ordered by start time
        status: Stanza status message reported by the tool ("ok", ...)
    """
    stanza: str
    backups: tuple[Backup, ...] = field(default_factory=tuple)
    status: str = "unknown"

    @property
    def has_full_backup(self) -> bool:
        return any(b.is_full for b in self.backups)

    @property
    def last_backup_type(self) -> Optional[str]:
        if not self.backups:
            return None
        return self.backups[-1].type

    @classmethod
    def from_info(cls, stanza: str, info: list[dict[str, Any]]) -> "BackupCatalog":
        """Build a catalog from parsed `pgbackrest info --output=json` output."""
        for entry in info:
            if entry.get("name") != stanza:
                continue
            backups = []
            for raw in entry.get("backup", []):
                started = (raw.get("timestamp") or {}).get("start")
                taken_at = (
                    datetime.fromtimestamp(started, tz=timezone.utc)
                    if started is not None else None
                )
                backups.append(Backup(
                    type=raw.get("type", "unknown"),
                    label=raw.get("label", ""),
                    stanza=stanza,
                    taken_at=taken_at,
                ))
            backups.sort(key=lambda b: b.taken_at or datetime.min.replace(tzinfo=timezone.utc))
            status = (entry.get("status") or {}).get("message", "unknown")
            return cls(stanza=stanza, backups=tuple(backups), status=status)
        return cls(stanza=stanza)
