"""
Evidence policies and per-step progress accumulation.

Each poll tick produces a DetectionFrame. classify() turns it into Evidence
for the current step's EvidencePolicy, and ProgressState.record() folds that
evidence into a bounded progress score:

    positive  →  progress += positive_increment   (boosted_increment when two
                                                   independent signals agree)
    negative  →  progress -= negative_decrement
    progress is clamped to [0, 100]; every evaluated tick is one attempt.

Usage:
    policy = policy_for(step.action, step.evidence)
    state = ProgressState(max_attempts=3, policy=policy)
    ev = classify(frame, policy)
    state.record(ev)
    state.progress      # 0-100
    state.attempts      # ticks evaluated so far
"""

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict

from careguide.constants import COMPLETION_THRESHOLD, PROGRESS_MAX, PROGRESS_MIN
from careguide.detector import DetectionFrame
from careguide.hands import is_hand_near_mouth

EvidenceSource = Literal["object", "edges", "any"]
Polarity = Literal["positive", "negative", "absent"]
CompletionReason = Literal["progress", "attempt_cap", "timeout", "manual"]

DEFAULT_ACTION = "any"


class EvidencePolicy(BaseModel):
    """What counts as evidence for a step, and how much it moves progress."""
    model_config = ConfigDict(frozen=True)

    source: EvidenceSource = "any"
    target_label: str | None = None
    min_confidence: float = 0.0
    # object top edge must sit above this fraction of frame height
    upper_frame_ratio: float | None = None
    # hand-near-mouth counts as a second, independent signal
    hand_signal: bool = False
    positive_increment: int = 10
    boosted_increment: int | None = None
    negative_decrement: int = 2
    completion_threshold: int = COMPLETION_THRESHOLD


# Action category → policy. Steps name a category; unknown names fall back to "any".
ACTION_POLICIES: dict[str, EvidencePolicy] = {
    "any": EvidencePolicy(),
    "brush_teeth": EvidencePolicy(
        source="object",
        target_label="toothbrush",
        min_confidence=0.6,
        upper_frame_ratio=0.6,
        hand_signal=True,
        positive_increment=15,
        boosted_increment=25,
        negative_decrement=5,
    ),
    "edge_check": EvidencePolicy(
        source="edges",
        positive_increment=PROGRESS_MAX,
        negative_decrement=0,
    ),
}


def policy_for(action: str | None, override: EvidencePolicy | None = None) -> EvidencePolicy:
    if override is not None:
        return override
    return ACTION_POLICIES.get(action or DEFAULT_ACTION, ACTION_POLICIES[DEFAULT_ACTION])


@dataclass(frozen=True)
class Evidence:
    polarity: Polarity
    signals: int = 0
    delta: int = 0
    detail: str = ""


ABSENT = Evidence("absent", detail="no frame evaluated")


def _positive(policy: EvidencePolicy, signals: int, detail: str) -> Evidence:
    amount = policy.positive_increment
    if signals >= 2 and policy.boosted_increment is not None:
        amount = policy.boosted_increment
    return Evidence("positive", signals, amount, detail)


def _negative(policy: EvidencePolicy, detail: str) -> Evidence:
    return Evidence("negative", 0, -policy.negative_decrement, detail)


def _classify_object(frame: DetectionFrame, policy: EvidencePolicy) -> Evidence:
    # No model running: the edge verdict stands in as a single signal
    if frame.is_heuristic and not frame.detections:
        if frame.edge_positive:
            return _positive(policy, 1, f"edges={frame.edge_count}")
        return _negative(policy, f"edges={frame.edge_count}")

    obj = frame.best(policy.target_label) if policy.target_label else None
    if obj is not None and obj.score <= policy.min_confidence:
        obj = None
    hand = policy.hand_signal and is_hand_near_mouth(frame.hands)

    if obj is None:
        return _negative(policy, f"{policy.target_label} not found")

    if policy.upper_frame_ratio is None:
        in_upper = True
    else:
        in_upper = obj.box[1] < frame.height * policy.upper_frame_ratio

    if not (in_upper or hand):
        return _negative(policy, f"{obj.label} {obj.score:.2f} outside target area")
    signals = 2 if hand else 1
    return _positive(
        policy, signals,
        f"{obj.label} {obj.score:.2f} upper={in_upper} hand={hand}",
    )


def classify(frame: DetectionFrame, policy: EvidencePolicy) -> Evidence:
    """Turn one tick's observations into positive/negative evidence."""
    if policy.source == "object":
        return _classify_object(frame, policy)

    if policy.source == "edges" and frame.is_heuristic:
        if frame.edge_positive:
            return _positive(policy, 1, f"edges={frame.edge_count}")
        return _negative(policy, f"edges={frame.edge_count}")

    # "any", or "edges" against a model frame: any evidence present
    present = bool(frame.detections) or bool(frame.hands) or bool(frame.edge_positive)
    if present:
        return _positive(
            policy, 1,
            f"objects={len(frame.detections)} hands={len(frame.hands)}",
        )
    return _negative(policy, "nothing detected")


def clamp_progress(value: float) -> int:
    return int(max(PROGRESS_MIN, min(PROGRESS_MAX, value)))


class ProgressState:
    """Per-step attempts, bounded progress score and one-way completion flag."""

    def __init__(self, max_attempts: int, policy: EvidencePolicy):
        self.max_attempts = max(1, max_attempts)
        self.policy = policy
        self.attempts = 0
        self.progress = 0
        self.completed = False
        self.reason: CompletionReason | None = None
        self.last_evidence: Evidence = ABSENT

    def record(self, evidence: Evidence) -> None:
        """Count one evaluated tick and apply its delta. Ignored once completed."""
        if self.completed or evidence.polarity == "absent":
            return
        self.attempts += 1
        self.progress = clamp_progress(self.progress + evidence.delta)
        self.last_evidence = evidence

    @property
    def threshold_reached(self) -> bool:
        return self.progress >= self.policy.completion_threshold

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def complete(self, reason: CompletionReason) -> bool:
        """Mark completed. Returns False if it already was."""
        if self.completed:
            return False
        self.completed = True
        self.reason = reason
        if reason == "timeout":
            self.progress = PROGRESS_MAX
        return True
