"""
StepRunner - resumable, durable execution of the orchestrator's step list.

The StepRunner implements:
- Skip of steps whose completion marker is already present
- Artifact persistence before the completion marker
- Fail-fast abort with a StepError naming the failing step
- Setup vs. scheduled step selection
- A one-step force override

Execution flow:
1. Select steps for the mode (scheduled drops setup-only steps, after
   verifying setup has completed at some point)
2. For each step:
   a. Read the marker; skip if complete and not forced
   b. Run the action
   c. Write every artifact the action returned
   d. Write the marker
3. Return a RunResult with one StepOutcome per step

There is no in-progress state. A process killed mid-step leaves the marker
absent and the next run repeats the step, so step actions must be safe to
repeat.
"""

import logging
from datetime import date, datetime
from typing import Optional, Sequence

from snaprest.errors import ConfigurationError, StepError
from snaprest.schemas import (
    RunMode,
    RunResult,
    Step,
    StepContext,
    StepOutcome,
    StepStatus,
)
from snaprest.state_store import StateStore

logger = logging.getLogger(__name__)


def _local_now() -> datetime:
    """Return current local time as timezone-aware datetime."""
    return datetime.now().astimezone()


class StepRunner:
    """
    Runs an ordered step list against a StateStore.

    Usage:
        runner = StepRunner(FileStateStore("state.env"))
        result = runner.run(steps, RunMode.SCHEDULED)
    """

    def __init__(self, state: StateStore):
        self._state = state

    @property
    def state(self) -> StateStore:
        return self._state

    def setup_completed(self, steps: Sequence[Step], run_date: date) -> bool:
        """Whether every setup-only step has a completion marker."""
        return all(
            step.is_complete(self._state.get(step.key), run_date)
            for step in steps
            if step.setup_only
        )

    def select_steps(self, steps: Sequence[Step], mode: RunMode, run_date: date) -> list[Step]:
        """
        Steps to consider for this mode.

        Raises:
            ConfigurationError: Scheduled mode before setup ever completed
        """
        if mode == RunMode.SETUP:
            return list(steps)

        pending = [
            step.name for step in steps
            if step.setup_only and not step.is_complete(self._state.get(step.key), run_date)
        ]
        if pending:
            raise ConfigurationError(
                "Setup has not completed (pending: " + ", ".join(pending) + "); "
                "run setup before scheduling backups"
            )
        return [step for step in steps if not step.setup_only]

    def _persist(self, step: Step, artifacts: dict, run_date: date) -> dict[str, str]:
        """Write artifacts, then the completion marker."""
        artifacts = {k: str(v) for k, v in artifacts.items()}
        unexpected = set(artifacts) - set(step.produces)
        if step.produces and unexpected:
            logger.warning(f"Step {step.name} produced undeclared artifacts: {sorted(unexpected)}")

        for key, value in artifacts.items():
            self._state.set(key, value)
        self._state.set(step.key, step.marker_value(run_date))
        return artifacts

    def run(
        self,
        steps: Sequence[Step],
        mode: RunMode,
        force_step: Optional[str] = None,
        now: Optional[datetime] = None,
        run_date: Optional[date] = None,
    ) -> RunResult:
        """
        Execute steps in order, skipping completed ones.

        Args:
            steps: Static step list (setup-only steps included)
            mode: setup or scheduled
            force_step: Name of one step to run even if complete
            now: Run start time (defaults to local now)
            run_date: Calendar day for recurring markers (defaults to now's local date)

        Returns:
            RunResult describing what ran and what was skipped

        Raises:
            ConfigurationError: Unknown force_step, or scheduled before setup
            StepError: A step action failed; earlier markers are untouched
        """
        now = now or _local_now()
        run_date = run_date or now.date()

        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate step names: {names}")

        selected = self.select_steps(steps, mode, run_date)
        if force_step is not None and force_step not in {s.name for s in selected}:
            raise ConfigurationError(
                f"Cannot force unknown step '{force_step}' in {mode.value} mode "
                f"(steps: {', '.join(s.name for s in selected)})"
            )

        result = RunResult(mode=mode, run_date=run_date)
        context = StepContext(mode=mode, run_date=run_date, now=now, state=self._state)

        for step in selected:
            marker = self._state.get(step.key)
            forced = step.name == force_step

            if step.is_complete(marker, run_date) and not forced:
                logger.info(
                    f"Skipping step {step.name}: already complete ({step.key}={marker})",
                    extra={"step": step.name, "event": "step_skipped"},
                )
                result.outcomes.append(StepOutcome(name=step.name, status=StepStatus.SKIPPED))
                continue

            logger.info(
                f"=== STEP {step.name}{' (forced)' if forced else ''} ===",
                extra={"step": step.name, "event": "step_started"},
            )
            try:
                artifacts = step.action(context) or {}
                artifacts = self._persist(step, artifacts, run_date)
            except Exception as e:
                error = StepError(step.name, e)
                logger.error(
                    str(error),
                    extra={
                        "step": step.name,
                        "event": "step_failed",
                        "metadata": {"type": type(e).__name__, "host": error.host},
                    },
                )
                result.outcomes.append(StepOutcome(
                    name=step.name,
                    status=StepStatus.FAILED,
                    error=str(e),
                ))
                raise error from e

            logger.info(
                f"Step {step.name} completed",
                extra={"step": step.name, "event": "step_completed", "metadata": artifacts},
            )
            result.outcomes.append(StepOutcome(
                name=step.name,
                status=StepStatus.COMPLETED,
                artifacts=artifacts,
            ))

        return result
