"""
snaprest.schemas - Data structures for the backup orchestrator.

Step -> StepOutcome -> RunResult tracks one run of the step list.
BackupCatalog / Snapshot / RepositorySlotAssignment describe the things the
steps act on; RetentionPolicy / RetentionReport describe snapshot pruning.
"""

from .backup import (
    Backup,
    BackupCatalog,
    BackupMode,
    BackupType,
)
from .slot import RepositorySlotAssignment
from .snapshot import (
    RetentionPolicy,
    RetentionReport,
    Snapshot,
)
from .step import (
    RunMode,
    RunResult,
    Step,
    StepContext,
    StepOutcome,
    StepStatus,
    is_truthy,
)

__all__ = [
    # Backup
    "Backup",
    "BackupCatalog",
    "BackupMode",
    "BackupType",
    # Slot
    "RepositorySlotAssignment",
    # Snapshot
    "RetentionPolicy",
    "RetentionReport",
    "Snapshot",
    # Step
    "RunMode",
    "RunResult",
    "Step",
    "StepContext",
    "StepOutcome",
    "StepStatus",
    "is_truthy",
]
