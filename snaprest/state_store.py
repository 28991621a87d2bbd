"""
StateStore - Durable key/value persistence for step markers and artifacts.

The StateStore holds:
- Step completion markers (PGBACKREST_CONFIGURED=true, BACKUP_COMPLETED=2026-10-18)
- Artifacts produced by steps (STANDBY_REPO_NUMBER, LAST_BACKUP_TYPE, ...)

Semantics:
- Read in full at process start (load)
- Upserted one key at a time; last write wins
- Keys are only removed by an explicit reset

Storage backends:
- In-memory (for testing)
- File-based KEY=VALUE lines, rewritten atomically on every upsert
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_key(key: str) -> None:
    if not KEY_PATTERN.match(key):
        raise ValueError(f"Invalid state key: {key!r}")


def _validate_value(key: str, value: str) -> None:
    if "\n" in value or "\r" in value:
        raise ValueError(f"State value for {key} must be a single line")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    return value


def _quote(value: str) -> str:
    if value and not re.search(r"[\s\"'#$`\\]", value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_state_lines(lines: Iterable[str]) -> dict[str, str]:
    """
    Parse KEY=VALUE lines.

    Blank lines and '#' comments are ignored. A later line for the same key
    wins. Values may be wrapped in single or double quotes.
    """
    records: dict[str, str] = {}
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logger.warning(f"Ignoring malformed state line {lineno}: {line!r}")
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        if not KEY_PATTERN.match(key):
            logger.warning(f"Ignoring invalid state key on line {lineno}: {key!r}")
            continue
        value = _unquote(value)
        records.pop(key, None)
        records[key] = value
    return records


class StateStore(ABC):
    """
    Abstract base class for orchestrator state.

    Implementations must provide methods to:
    - Load all records
    - Get, set, list and reset records
    """

    @abstractmethod
    def load(self) -> dict[str, str]:
        """
        Read every record from the backing medium.

        Returns:
            Copy of all records
        """
        pass

    @abstractmethod
    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Retrieve a value.

        Args:
            key: State key
            default: Returned when the key is absent

        Returns:
            The stored value, or default
        """
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Upsert a value durably. Overwriting with the same value is a no-op
        as far as callers can observe.

        Args:
            key: State key
            value: Single-line string value
        """
        pass

    @abstractmethod
    def list(self) -> dict[str, str]:
        """
        Return a copy of all records in insertion order.
        """
        pass

    @abstractmethod
    def reset(self, keys: Optional[Iterable[str]] = None) -> list[str]:
        """
        Remove records.

        Args:
            keys: Keys to remove; None removes everything

        Returns:
            The keys that were actually removed
        """
        pass

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._records: dict[str, str] = dict(initial or {})
        self.loaded = False
        self.writes: list[tuple[str, str]] = []

    def load(self) -> dict[str, str]:
        self.loaded = True
        return dict(self._records)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._records.get(key, default)

    def set(self, key: str, value: str) -> None:
        _validate_key(key)
        value = str(value)
        _validate_value(key, value)
        self._records.pop(key, None)
        self._records[key] = value
        self.writes.append((key, value))

    def list(self) -> dict[str, str]:
        return dict(self._records)

    def reset(self, keys: Optional[Iterable[str]] = None) -> list[str]:
        if keys is None:
            removed = list(self._records)
            self._records.clear()
            return removed
        removed = [k for k in keys if self._records.pop(k, None) is not None]
        return removed


class FileStateStore(StateStore):
    """
    File-based implementation of StateStore.

    Stores records as KEY=VALUE lines (compatible with shell `source`):

        BACKUP_VOLUME_CONFIGURED=true
        STANDBY_REPO_NUMBER=2
        LAST_BACKUP_DATE="2026-10-18 03:00:12"

    Every upsert rewrites the whole file through a temporary file in the same
    directory followed by os.replace, so a crash leaves either the old or the
    new file, never a truncated one.
    """

    def __init__(self, path: Path | str):
        self._path = Path(path).expanduser()
        self._records: Optional[dict[str, str]] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, str]:
        if self._path.exists():
            with open(self._path, encoding="utf-8") as f:
                self._records = parse_state_lines(f)
            logger.info(f"State loaded from: {self._path}")
        else:
            self._records = {}
            logger.info("No existing state file found")
        return dict(self._records)

    def _ensure_loaded(self) -> dict[str, str]:
        if self._records is None:
            self.load()
        return self._records

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._ensure_loaded().get(key, default)

    def set(self, key: str, value: str) -> None:
        _validate_key(key)
        value = str(value)
        _validate_value(key, value)
        records = self._ensure_loaded()
        updated = dict(records)
        updated.pop(key, None)
        updated[key] = value
        self._write(updated)
        self._records = updated
        logger.info(f"State saved: {key}={value}")

    def list(self) -> dict[str, str]:
        return dict(self._ensure_loaded())

    def reset(self, keys: Optional[Iterable[str]] = None) -> list[str]:
        records = self._ensure_loaded()
        if keys is None:
            removed = list(records)
            updated: dict[str, str] = {}
        else:
            wanted = set(keys)
            removed = [k for k in records if k in wanted]
            updated = {k: v for k, v in records.items() if k not in wanted}
        if removed:
            self._write(updated)
        self._records = updated
        return removed

    def _write(self, records: dict[str, str]) -> None:
        """Atomically replace the state file with records."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for key, value in records.items():
                    f.write(f"{key}={_quote(value)}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
