"""
Step progress controller: the per-step state machine of the task player.

Per step:  PENDING → IN_PROGRESS → COMPLETED

  begin_step()      current step enters IN_PROGRESS with attempts=0, progress=0
  tick(frame)       one evaluated poll: classify → update progress → check
                    completion (progress >= threshold, or attempts hit the cap)
  force_complete()  timeout / manual escape hatch; a step completes only once
  advance()         COMPLETED step → next step (index + 1), or task complete
                    on the last step

The controller owns no timers and does no I/O. careguide.session drives it
on a polling cadence and handles the settle delay, narration and teardown.
"""

from dataclasses import dataclass
from typing import Literal

from careguide.catalog import Step, Task
from careguide.detector import DetectionFrame
from careguide.evidence import (
    CompletionReason,
    Evidence,
    ProgressState,
    classify,
)

StepPhase = Literal["PENDING", "IN_PROGRESS", "COMPLETED"]


@dataclass
class SessionState:
    """What the player view shows; lives as long as the session."""
    current_step_index: int = 0
    camera_active: bool = False
    camera_error: str | None = None
    narration_playing: bool = False
    status: str = "Initializing..."
    task_complete: bool = False
    repeat_count: int = 0


@dataclass(frozen=True)
class TickResult:
    evidence: Evidence
    progress: int
    attempts: int
    completed: bool
    reason: CompletionReason | None = None


class StepProgressController:
    """Owns the current step index and that step's ProgressState."""

    def __init__(self, task: Task):
        self.task = task
        self.state = SessionState()
        self._phases: list[StepPhase] = ["PENDING"] * len(task.steps)
        self._progress: ProgressState | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def index(self) -> int:
        return self.state.current_step_index

    @property
    def step(self) -> Step:
        return self.task.steps[self.index]

    @property
    def phase(self) -> StepPhase:
        return self._phases[self.index]

    @property
    def progress(self) -> ProgressState | None:
        return self._progress

    @property
    def is_last_step(self) -> bool:
        return self.index == self.task.last_index

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_step(self) -> Step:
        """Enter IN_PROGRESS for the current step with fresh progress."""
        self._progress = ProgressState(
            max_attempts=self.task.attempt_cap(self.index),
            policy=self.step.policy,
        )
        self._phases[self.index] = "IN_PROGRESS"
        self.state.repeat_count = 0
        return self.step

    def tick(self, frame: DetectionFrame) -> TickResult | None:
        """Evaluate one frame. Returns None when the step is not IN_PROGRESS."""
        if self.phase != "IN_PROGRESS" or self._progress is None:
            return None
        p = self._progress
        ev = classify(frame, p.policy)
        p.record(ev)
        if p.threshold_reached:
            self._mark_completed("progress")
        elif p.attempts_exhausted:
            self._mark_completed("attempt_cap")
        return TickResult(
            evidence=ev,
            progress=p.progress,
            attempts=p.attempts,
            completed=p.completed,
            reason=p.reason,
        )

    def force_complete(self, reason: CompletionReason) -> bool:
        """Complete the current step regardless of progress. False if already done."""
        if self.phase != "IN_PROGRESS" or self._progress is None:
            return False
        return self._mark_completed(reason)

    def _mark_completed(self, reason: CompletionReason) -> bool:
        if not self._progress.complete(reason):
            return False
        self._phases[self.index] = "COMPLETED"
        return True

    def advance(self) -> bool:
        """
        Move past a COMPLETED step. Returns True if a new step began, False if
        the task is now complete (or the current step is not completed yet).
        """
        if self.phase != "COMPLETED":
            return False
        if self.is_last_step:
            self.state.task_complete = True
            self._progress = None
            return False
        self.state.current_step_index += 1
        self.begin_step()
        return True
