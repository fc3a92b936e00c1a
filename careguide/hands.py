"""
Hand landmarks: simulated stub, optional MediaPipe tracker, proximity checks.

The task player only needs one signal from hands: "is a hand near the mouth?"
It is combined with the toothbrush detection to boost step progress.

HandLandmarkStub is a PLACEHOLDER, not a detector. Each call returns one hand
of 21 random points with probability ~0.3, and no hands otherwise. Tests and
callers inject their own random.Random to make it deterministic.

MediaPipeHandTracker uses the MediaPipe Tasks API (HandLandmarker) and returns
the same shape. If the model file is missing or MediaPipe fails to initialize,
available is False and detect() returns no hands.

All landmarks are normalised (x, y, z) with x, y in [0, 1] (0, 0 = top-left).
"""

import random
from pathlib import Path
from typing import Any, Protocol

import cv2
import numpy as np

from careguide.constants import HAND_LANDMARK_COUNT, HAND_STUB_PROBABILITY, MOUTH_REGION

HAND_LANDMARKER_MODEL = "models/hand_landmarker.task"

Landmarks = list[tuple[float, float, float]]

# Landmark indices (same as the 21-point MediaPipe hand model)
THUMB_TIP = 4
INDEX_TIP = 8
MIDDLE_TIP = 12
RING_TIP = 16
PINKY_TIP = 20

CONNECTIONS = [
    (0, 1), (1, 2), (2, 3), (3, 4),
    (0, 5), (5, 6), (6, 7), (7, 8),
    (0, 9), (9, 10), (10, 11), (11, 12),
    (0, 13), (13, 14), (14, 15), (15, 16),
    (0, 17), (17, 18), (18, 19), (19, 20),
    (5, 9), (9, 13), (13, 17),
]


class HandProvider(Protocol):
    def detect(self, frame_bgr: np.ndarray | None) -> list[Landmarks]: ...


class HandLandmarkStub:
    """Simulated hand presence. Placeholder until a real gesture model is chosen."""

    def __init__(
        self,
        probability: float = HAND_STUB_PROBABILITY,
        rng: random.Random | None = None,
    ):
        self.probability = probability
        self.rng = rng or random.Random()

    def detect(self, frame_bgr: np.ndarray | None = None) -> list[Landmarks]:
        if self.rng.random() >= self.probability:
            return []
        return [[
            (self.rng.random(), self.rng.random(), self.rng.random())
            for _ in range(HAND_LANDMARK_COUNT)
        ]]


class MediaPipeHandTracker:
    """Real hand landmarks via MediaPipe HandLandmarker (IMAGE mode)."""

    def __init__(self, model_path: str = HAND_LANDMARKER_MODEL, num_hands: int = 2):
        self.model_path = model_path
        self.num_hands = num_hands
        self._detector: Any = None
        self._available: bool | None = None

    @property
    def available(self) -> bool:
        return self._init_detector()

    def _init_detector(self) -> bool:
        if self._available is not None:
            return self._available
        if not Path(self.model_path).exists():
            self._available = False
            return False
        try:
            from mediapipe.tasks.python import BaseOptions
            from mediapipe.tasks.python.vision import (
                HandLandmarker,
                HandLandmarkerOptions,
                RunningMode,
            )

            options = HandLandmarkerOptions(
                base_options=BaseOptions(model_asset_path=self.model_path),
                running_mode=RunningMode.IMAGE,
                num_hands=self.num_hands,
                min_hand_detection_confidence=0.5,
                min_tracking_confidence=0.4,
            )
            self._detector = HandLandmarker.create_from_options(options)
            self._available = True
        except (ImportError, RuntimeError, ValueError, OSError):
            self._detector = None
            self._available = False
        return self._available

    def detect(self, frame_bgr: np.ndarray | None) -> list[Landmarks]:
        if frame_bgr is None or not self._init_detector():
            return []
        import mediapipe as mp

        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=frame_rgb)
        result = self._detector.detect(mp_image)
        if not result.hand_landmarks:
            return []
        return [
            [(lm.x, lm.y, lm.z) for lm in hand_lm]
            for hand_lm in result.hand_landmarks
        ]


def is_hand_near_mouth(
    hands: list[Landmarks],
    region: tuple[float, float, float, float] = MOUTH_REGION,
) -> bool:
    """
    True if the index fingertip of any hand lies inside the mouth region.
    region: normalised (x1, y1, x2, y2). Incomplete hands are ignored.
    """
    x1, y1, x2, y2 = region
    for hand in hands:
        if len(hand) < HAND_LANDMARK_COUNT:
            continue
        tx, ty = hand[INDEX_TIP][0], hand[INDEX_TIP][1]
        if x1 <= tx <= x2 and y1 <= ty <= y2:
            return True
    return False


def draw_hands(frame_bgr: np.ndarray, hands: list[Landmarks]) -> np.ndarray:
    """Draw hand skeletons on a BGR frame. Returns the annotated frame."""
    if not hands:
        return frame_bgr
    out = frame_bgr.copy()
    h, w = out.shape[:2]
    color = (80, 210, 60)
    for hand in hands:
        pts = [(int(p[0] * w), int(p[1] * h)) for p in hand]
        for a, b in CONNECTIONS:
            if a < len(pts) and b < len(pts):
                cv2.line(out, pts[a], pts[b], color, 2, cv2.LINE_AA)
        for i, pt in enumerate(pts):
            r = 5 if i in (THUMB_TIP, INDEX_TIP, MIDDLE_TIP, RING_TIP, PINKY_TIP) else 3
            cv2.circle(out, pt, r, color, -1, cv2.LINE_AA)
    return out
