"""
RepositorySlotAllocator - assigns each backup source a numbered repository
(repo<N>-*) in the primary's shared pgBackRest configuration.

Allocation is read-then-decide with no lock:
1. Read the destination configuration, collect every repo<N>- key
2. If repo<N>-host matches the owner identity, reuse N
3. Otherwise hand out max(N) + 1 (or 1)

The caller writes the new entry with insert_slot_entry(). Two sources
allocating against the same destination at the same moment can both be
handed the same number; callers must not run concurrently.
"""

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from snaprest.errors import AllocationError, ConnectivityError, SnaprestError
from snaprest.schemas import RepositorySlotAssignment

if TYPE_CHECKING:
    from snaprest.clients.remote import ConfigDestination, RemoteExecutor

logger = logging.getLogger(__name__)

# repo<N>-<option>=<value>, optionally indented
SLOT_KEY_PATTERN = re.compile(r"^\s*repo(\d+)-([A-Za-z0-9-]+)\s*=\s*(.*?)\s*$")
SECTION_PATTERN = re.compile(r"^\s*\[([^\]]+)\]\s*$")


@dataclass(frozen=True)
class SlotRetention:
    """Per-repository retention written with a new slot entry."""
    full: int = 4
    diff: int = 3
    archive: int = 10


def parse_slots(config_text: str) -> dict[int, dict[str, str]]:
    """
    Extract repository slots from a pgBackRest configuration.

    Args:
        config_text: Raw configuration file contents

    Returns:
        Mapping of slot number -> {option: value}

    Raises:
        AllocationError: If a slot is numbered 0
    """
    slots: dict[int, dict[str, str]] = {}
    for line in config_text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = SLOT_KEY_PATTERN.match(line)
        if not match:
            continue
        number = int(match.group(1))
        if number < 1:
            raise AllocationError(f"Invalid repository slot number in configuration: {stripped!r}")
        slots.setdefault(number, {})[match.group(2)] = match.group(3)
    return slots


def find_owner_slot(slots: dict[int, dict[str, str]], owner_identity: str) -> Optional[int]:
    """
    Find the slot whose repo<N>-host is owner_identity.

    Raises:
        AllocationError: If the owner appears on more than one slot
    """
    owned = sorted(n for n, options in slots.items() if options.get("host") == owner_identity)
    if len(owned) > 1:
        raise AllocationError(
            f"Owner {owner_identity} is configured on multiple repository slots: "
            + ", ".join(f"repo{n}" for n in owned)
        )
    return owned[0] if owned else None


def next_slot(slots: dict[int, dict[str, str]]) -> int:
    """max(existing) + 1, or 1 for an empty configuration."""
    return max(slots) + 1 if slots else 1


def allocate_from_text(config_text: str, owner_identity: str) -> RepositorySlotAssignment:
    """Pure allocation against already-read configuration text."""
    if not owner_identity:
        raise AllocationError("Owner identity is required for slot allocation")
    slots = parse_slots(config_text)
    existing = find_owner_slot(slots, owner_identity)
    if existing is not None:
        return RepositorySlotAssignment(owner_identity, existing, existing=True)
    return RepositorySlotAssignment(owner_identity, next_slot(slots), existing=False)


def render_slot_entry(
    assignment: RepositorySlotAssignment,
    repo_path: str,
    host_user: str = "postgres",
    retention: SlotRetention = SlotRetention(),
) -> list[str]:
    """Configuration lines describing one repository slot."""
    p = assignment.prefix
    return [
        f"# Repository {assignment.slot_number} - Standby at {assignment.owner_identity}",
        f"{p}-host-user={host_user}",
        f"{p}-host={assignment.owner_identity}",
        f"{p}-path={repo_path}",
        f"{p}-retention-full={retention.full}",
        f"{p}-retention-diff={retention.diff}",
        f"{p}-retention-archive={retention.archive}",
    ]


def insert_slot_entry(
    config_text: str,
    assignment: RepositorySlotAssignment,
    stanza: str,
    pg_data_dir: str,
    repo_path: str,
    log_path: str,
    host_user: str = "postgres",
    retention: SlotRetention = SlotRetention(),
    process_max: int = 12,
) -> str:
    """
    Add a slot entry to a destination configuration.

    If the configuration has a [global] section the entry is inserted right
    below the section header. Otherwise a fresh configuration is produced with
    the stanza section and a [global] section holding the entry.
    """
    entry = render_slot_entry(assignment, repo_path, host_user, retention)
    lines = config_text.splitlines()

    for index, line in enumerate(lines):
        match = SECTION_PATTERN.match(line)
        if match and match.group(1).strip() == "global":
            updated = lines[: index + 1] + entry + lines[index + 1:]
            return "\n".join(updated) + "\n"

    fresh = [
        f"[{stanza}]",
        f"pg1-path={pg_data_dir}",
        "pg1-port=5432",
        "pg1-socket-path=/tmp",
        "",
        "[global]",
        *entry,
        "",
        f"process-max={process_max}",
        "start-fast=y",
        "stop-auto=y",
        "delta=y",
        "compress-type=zst",
        "compress-level=3",
        "log-level-console=info",
        "log-level-file=detail",
        f"log-path={log_path}",
    ]
    return "\n".join(fresh) + "\n"


class RepositorySlotAllocator:
    """
    Allocates repository slots against a shared destination configuration.

    Usage:
        allocator = RepositorySlotAllocator(executor)
        assignment = allocator.allocate(destination, "10.40.0.17")
        if not assignment.existing:
            text = insert_slot_entry(allocator.last_config_text, assignment, ...)
            executor.write_config(destination, text)
    """

    def __init__(self, executor: "RemoteExecutor"):
        self._executor = executor
        self.last_config_text: str = ""

    def read(self, destination: "ConfigDestination") -> str:
        """Read the destination configuration (empty string if absent)."""
        try:
            text = self._executor.read_config(destination)
        except ConnectivityError:
            raise
        except SnaprestError as e:
            raise AllocationError(
                f"Cannot read repository configuration {destination.path}: {e}",
                host=destination.host,
            ) from e
        self.last_config_text = text
        return text

    def allocate(self, destination: "ConfigDestination", owner_identity: str) -> RepositorySlotAssignment:
        """
        Discover or assign the owner's slot number.

        Args:
            destination: Shared configuration location (host + path)
            owner_identity: Identity of the calling backup source

        Returns:
            RepositorySlotAssignment (existing=True when reused)

        Raises:
            AllocationError: If existing assignments cannot be determined
            ConnectivityError: If the destination host is unreachable
        """
        text = self.read(destination)
        try:
            assignment = allocate_from_text(text, owner_identity)
        except AllocationError as e:
            if e.host is None:
                e.host = destination.host
            raise

        if assignment.existing:
            logger.info(
                f"{owner_identity} already configured as {assignment.prefix} on {destination.host}"
            )
        else:
            logger.info(
                f"Allocated {assignment.prefix} for {owner_identity} on {destination.host}"
            )
        return assignment
