"""
Task catalog: ordered instructional steps the player walks through.

================================================================================
HOW THIS SCRIPT WORKS (for studying)
================================================================================

A Task is a titled, ordered list of Steps. Each Step carries what the child
sees and hears (instruction, audio_prompt, success_criteria, media) and how
the player decides it is done:

  - action: an action category looked up in careguide.evidence.ACTION_POLICIES
    (e.g. "brush_teeth"); unknown or missing → "any evidence present".
  - evidence: optional EvidencePolicy that replaces the category's policy.
  - max_attempts: attempt cap for this step; falls back to the task's
    default_max_attempts, then to DEFAULT_MAX_ATTEMPTS (3).
  - default_repetition: seconds between re-narrations in "ai" repetition mode.

Tasks are immutable (frozen pydantic models) and validated on load: step ids
must be unique within a task.

  BUILT-IN TASKS:
  - "brushing-teeth": seven steps gated by the object detector; the two
    brushing steps need a toothbrush near the mouth.
  - "brushing-teeth-check": six steps gated by the edge-density heuristic,
    one still every 3 seconds, with small attempt caps.

  FUNCTIONS:
  - get_task(task_id): built-in lookup, KeyError if unknown.
  - load_task(path): read one task from a JSON file of the same shape.
  - load_catalog(directory): built-ins plus every *.json task in a directory.
"""
import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator

from careguide.constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_REPETITION_SECONDS
from careguide.evidence import EvidencePolicy, policy_for


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    instruction: str
    audio_prompt: str = ""
    success_criteria: str = ""
    action: str | None = None
    evidence: EvidencePolicy | None = None
    max_attempts: int | None = None
    default_repetition: int | None = None
    media: str | None = None

    @property
    def narration(self) -> str:
        return self.audio_prompt or self.instruction

    @property
    def policy(self) -> EvidencePolicy:
        return policy_for(self.action, self.evidence)


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    default_max_attempts: int | None = None
    steps: tuple[Step, ...]

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: tuple[Step, ...]) -> tuple[Step, ...]:
        if not steps:
            raise ValueError("A task needs at least one step")
        seen: set[str] = set()
        for s in steps:
            if s.id in seen:
                raise ValueError(f"Duplicate step id: {s.id}")
            seen.add(s.id)
        return steps

    def attempt_cap(self, index: int) -> int:
        step = self.steps[index]
        return step.max_attempts or self.default_max_attempts or DEFAULT_MAX_ATTEMPTS

    def repetition_seconds(self, index: int, default: float = DEFAULT_REPETITION_SECONDS) -> float:
        return self.steps[index].default_repetition or default

    @property
    def last_index(self) -> int:
        return len(self.steps) - 1


BRUSHING_TEETH = Task(
    id="brushing-teeth",
    title="Brushing Teeth",
    description="Step-by-step guide to brushing teeth",
    # one tick per second; the fallback timer normally fires first
    default_max_attempts=12,
    steps=(
        Step(
            id="step-1",
            instruction="Pick up your toothbrush",
            audio_prompt="Let's start. Pick up your toothbrush.",
            success_criteria="Toothbrush is in hand",
            action="pickup_toothbrush",
            media="/pickup.mp4",
        ),
        Step(
            id="step-2",
            instruction="Wet the toothbrush under water",
            audio_prompt="Now wet your toothbrush under the water.",
            success_criteria="Toothbrush is wet",
            action="wet_toothbrush",
            media="/toothpaste.mp4",
        ),
        Step(
            id="step-3",
            instruction="Open the toothpaste",
            audio_prompt="Open the toothpaste cap.",
            success_criteria="Toothpaste cap is off",
            action="open_toothpaste",
            media="/videos/open_toothpaste.mp4",
        ),
        Step(
            id="step-4",
            instruction="Apply toothpaste to the brush",
            audio_prompt="Squeeze a little toothpaste onto your brush.",
            success_criteria="Toothpaste is on brush",
            action="apply_toothpaste",
            media="/videos/apply_toothpaste.mp4",
        ),
        Step(
            id="step-5",
            instruction="Brush your top teeth",
            audio_prompt="Brush your top teeth, gently, back and forth.",
            success_criteria="Top teeth brushed",
            action="brush_teeth",
            default_repetition=20,
            media="/videos/brush_top.mp4",
        ),
        Step(
            id="step-6",
            instruction="Brush your bottom teeth",
            audio_prompt="Now brush your bottom teeth.",
            success_criteria="Bottom teeth brushed",
            action="brush_teeth",
            default_repetition=20,
            media="/videos/brush_bottom.mp4",
        ),
        Step(
            id="step-7",
            instruction="Rinse your mouth with water",
            audio_prompt="Great job! Rinse your mouth with water.",
            success_criteria="Mouth rinsed",
            action="rinse_mouth",
            media="/videos/rinse.mp4",
        ),
    ),
)

BRUSHING_TEETH_CHECK = Task(
    id="brushing-teeth-check",
    title="Brushing Teeth",
    description="Quick camera check for each brushing step",
    steps=(
        Step(id="step-1", instruction="Pick up your toothbrush",
             success_criteria="Toothbrush is in hand", action="edge_check",
             max_attempts=3, media="/toothbrush.png"),
        Step(id="step-2", instruction="Wet the toothbrush under water",
             success_criteria="Toothbrush is wet", action="edge_check",
             max_attempts=3, media="/toothbrush-water.png"),
        Step(id="step-3", instruction="Apply toothpaste to the brush",
             success_criteria="Toothpaste is on brush", action="edge_check",
             max_attempts=3, media="/toothpaste.png"),
        Step(id="step-4", instruction="Brush your teeth (top) for 30 seconds",
             success_criteria="Top teeth brushed", action="edge_check",
             max_attempts=6, media="/brushing-top.png"),
        Step(id="step-5", instruction="Brush your teeth (bottom) for 30 seconds",
             success_criteria="Bottom teeth brushed", action="edge_check",
             max_attempts=6, media="/brushing-bottom.png"),
        Step(id="step-6", instruction="Rinse your mouth with water",
             success_criteria="Mouth rinsed", action="edge_check",
             max_attempts=3, media="/rinsing.png"),
    ),
)

BUILTIN_TASKS: dict[str, Task] = {
    t.id: t for t in (BRUSHING_TEETH, BRUSHING_TEETH_CHECK)
}


def get_task(task_id: str) -> Task:
    """Return a built-in task. Raises KeyError if unknown."""
    return BUILTIN_TASKS[task_id]


def load_task(path: str | Path) -> Task:
    """
    Load one task from JSON (relative to cwd or absolute).
    Raises if the file is missing, not JSON, or fails validation.
    """
    p = Path(path)
    if not p.is_absolute():
        p = Path.cwd() / p
    with open(p, encoding="utf-8") as f:
        return Task.model_validate(json.load(f))


def load_catalog(directory: str | Path | None = None) -> dict[str, Task]:
    """Built-in tasks plus any *.json tasks in directory (which may not exist)."""
    catalog = dict(BUILTIN_TASKS)
    if directory is None:
        return catalog
    d = Path(directory)
    if not d.is_dir():
        return catalog
    for p in sorted(d.glob("*.json")):
        task = load_task(p)
        catalog[task.id] = task
    return catalog
