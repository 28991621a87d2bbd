"""
Step schemas - static step definitions and per-run outcomes.

A Step is defined by the orchestrator's static step list and is never
persisted itself. Only its completion marker (Step.key) is written to the
StateStore, and only after the step's artifacts.

Marker semantics:
- Setup steps write "true" and stay complete until an explicit reset.
- Recurring steps write the run date (YYYY-MM-DD) and are complete only for
  runs on that same calendar day.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from snaprest.state_store import StateStore


TRUTHY_VALUES = frozenset({"true", "yes", "y", "1", "on"})


def is_truthy(value: Optional[str]) -> bool:
    """Interpret a state or environment value as a boolean flag."""
    if value is None:
        return False
    return value.strip().strip('"').lower() in TRUTHY_VALUES


class RunMode(str, Enum):
    """Orchestrator run mode."""
    SETUP = "setup"
    SCHEDULED = "scheduled"


class StepStatus(str, Enum):
    """Status of a step within one run."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepContext:
    """
    Runtime context handed to a step action.

    Attributes:
        mode: Run mode of the current run
        run_date: Calendar day the run belongs to
        now: Wall-clock time captured at run start
        state: The run's StateStore (artifacts of earlier steps are visible)
    """
    mode: RunMode
    run_date: date
    now: datetime
    state: "StateStore"

    @property
    def interactive(self) -> bool:
        return self.mode == RunMode.SETUP


# A step action returns the artifacts it produced (state key -> value)
StepAction = Callable[[StepContext], Optional[dict[str, str]]]


@dataclass(frozen=True)
class Step:
    """
    A named step of the orchestrator.

    Attributes:
        name: Step name used on the command line and in errors
        key: State key of the completion marker
        action: Callable doing the work; must be safe to repeat
        setup_only: Runs only in setup mode
        recurring: Completion is scoped to the run date
        produces: Artifact keys the action may return (documentation and checks)
    """
    name: str
    key: str
    action: StepAction
    setup_only: bool = False
    recurring: bool = False
    produces: tuple[str, ...] = ()

    def __post_init__(self):
        if self.setup_only and self.recurring:
            raise ValueError(f"Step '{self.name}' cannot be both setup_only and recurring")

    def marker_value(self, run_date: date) -> str:
        """Value written to the completion marker."""
        return run_date.isoformat() if self.recurring else "true"

    def is_complete(self, value: Optional[str], run_date: date) -> bool:
        """Whether a stored marker value means this step is done for run_date."""
        if value is None:
            return False
        if self.recurring:
            return value.strip().strip('"') == run_date.isoformat()
        return is_truthy(value)


@dataclass(frozen=True)
class StepOutcome:
    """The outcome of one step within a run."""
    name: str
    status: StepStatus
    artifacts: dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.artifacts:
            result["artifacts"] = dict(self.artifacts)
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class RunResult:
    """Result of one orchestrator run."""
    mode: RunMode
    run_date: date
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def executed(self) -> list[str]:
        return [o.name for o in self.outcomes if o.status == StepStatus.COMPLETED]

    @property
    def skipped(self) -> list[str]:
        return [o.name for o in self.outcomes if o.status == StepStatus.SKIPPED]

    def get_outcome(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None
