"""
Perception adapters: edge-density heuristic and YOLO (Ultralytics) object detector.

HOW THIS SCRIPT WORKS (for studying)

Both adapters take a BGR frame from careguide.capture and return a
DetectionFrame, so the task player does not care which one is running:

  EdgeDensityDetector  (heuristic variant)
    gray = cvtColor(frame)  →  edges = Canny(gray, 50, 100)  →
    count = countNonZero(edges)  →  positive if count > threshold (1000)
    Pure and frame-local. Used when no model weights are available.
    Polls every 3 seconds.

  ObjectDetector  (model variant)
    Runs a pretrained YOLO model (COCO classes, which include "toothbrush")
    and converts boxes into Detection(label, score, box). Polls every second.

  DETECTION FORMAT:
  Detection.box is (x1, y1, x2, y2) in pixel coordinates (left, top, right,
  bottom). Detection.score is the model confidence in [0, 1].

  CACHING:
  get_model() is decorated with lru_cache so the weights load once per path.

  FAILURES:
  Anything that goes wrong inside evaluate() is raised as InferenceError. The
  session loop catches it, logs it, and treats the tick as "no evidence".
"""
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol

import cv2
import numpy as np

from careguide.constants import (
    CANNY_APERTURE,
    CANNY_HIGH,
    CANNY_LOW,
    CONF_MIN_DEFAULT,
    EDGE_THRESHOLD_DEFAULT,
    HEURISTIC_POLL_INTERVAL,
    IMGSZ_DEFAULT,
    MODEL_PATH,
    MODEL_POLL_INTERVAL,
)


class InferenceError(RuntimeError):
    """A detector failed on one frame. Non-fatal: the tick carries no evidence."""


@dataclass(frozen=True)
class Detection:
    label: str
    score: float
    box: tuple[float, float, float, float]


@dataclass
class DetectionFrame:
    """Everything one polling tick observed."""
    detections: list[Detection] = field(default_factory=list)
    # each hand: 21 normalised (x, y, z) points
    hands: list[list[tuple[float, float, float]]] = field(default_factory=list)
    width: int = 0
    height: int = 0
    # heuristic variant only
    edge_count: int | None = None
    edge_positive: bool | None = None

    @property
    def is_heuristic(self) -> bool:
        return self.edge_positive is not None

    def best(self, label: str) -> Detection | None:
        """Highest-scoring detection with this label, if any."""
        matches = [d for d in self.detections if norm_label(d.label) == norm_label(label)]
        if not matches:
            return None
        return max(matches, key=lambda d: d.score)


class FrameDetector(Protocol):
    poll_interval: float

    def evaluate(self, frame_bgr: np.ndarray) -> DetectionFrame: ...


def norm_label(name: str) -> str:
    return (name or "").strip().lower().replace(" ", "_")


# ---------------------------------------------------------------------------
# Heuristic variant
# ---------------------------------------------------------------------------

def count_edges(frame_bgr: np.ndarray) -> int:
    """Number of non-zero Canny edge pixels in the frame."""
    if frame_bgr.ndim == 2:
        gray = frame_bgr
    elif frame_bgr.shape[2] == 4:
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGRA2GRAY)
    else:
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
    edges = cv2.Canny(gray, CANNY_LOW, CANNY_HIGH, apertureSize=CANNY_APERTURE)
    return int(cv2.countNonZero(edges))


def edges_exceed(edge_count: int, threshold: int = EDGE_THRESHOLD_DEFAULT) -> bool:
    return edge_count > threshold


class EdgeDensityDetector:
    """Lots of edges in the still frame → something (a toothbrush) is being held up."""

    def __init__(
        self,
        threshold: int = EDGE_THRESHOLD_DEFAULT,
        poll_interval: float = HEURISTIC_POLL_INTERVAL,
    ):
        self.threshold = threshold
        self.poll_interval = poll_interval

    def classify(self, frame_bgr: np.ndarray) -> bool:
        return edges_exceed(count_edges(frame_bgr), self.threshold)

    def evaluate(self, frame_bgr: np.ndarray) -> DetectionFrame:
        try:
            n = count_edges(frame_bgr)
        except cv2.error as exc:
            raise InferenceError(f"Edge detection failed: {exc}") from exc
        h, w = frame_bgr.shape[:2]
        return DetectionFrame(
            width=w,
            height=h,
            edge_count=n,
            edge_positive=edges_exceed(n, self.threshold),
        )


# ---------------------------------------------------------------------------
# Model variant
# ---------------------------------------------------------------------------

def _load_model(path: str) -> Any:
    from ultralytics import YOLO
    return YOLO(path)


@lru_cache(maxsize=1)
def get_model(path: str = MODEL_PATH) -> Any:
    """
    Load YOLO model once (cached).
    A bare weights name (e.g. "yolov8n.pt") is handed to Ultralytics, which
    downloads it; any other path must exist. Raises FileNotFoundError otherwise.
    """
    p = Path(path)
    if p.parent == Path("."):
        return _load_model(path)
    if not p.is_absolute():
        p = Path.cwd() / p
    if not p.exists():
        raise FileNotFoundError(f"Model not found: {p}")
    return _load_model(str(p))


def infer_objects(
    frame_bgr: np.ndarray,
    model: Any,
    conf: float = CONF_MIN_DEFAULT,
    imgsz: int = IMGSZ_DEFAULT,
) -> list[Detection]:
    """Run YOLO on a BGR frame and return Detection objects."""
    results = model.predict(frame_bgr, conf=conf, imgsz=imgsz, verbose=False)
    detections = []
    for r in results:
        if r.boxes is None:
            continue
        names = r.names or {}
        for box in r.boxes:
            cls_id = int(box.cls.item())
            x1, y1, x2, y2 = (float(x) for x in box.xyxy[0].tolist())
            detections.append(Detection(
                label=names.get(cls_id, f"class_{cls_id}"),
                score=float(box.conf.item()),
                box=(x1, y1, x2, y2),
            ))
    return detections


class ObjectDetector:
    def __init__(
        self,
        model: Any,
        conf: float = CONF_MIN_DEFAULT,
        imgsz: int = IMGSZ_DEFAULT,
        poll_interval: float = MODEL_POLL_INTERVAL,
    ):
        self.model = model
        self.conf = conf
        self.imgsz = imgsz
        self.poll_interval = poll_interval

    def evaluate(self, frame_bgr: np.ndarray) -> DetectionFrame:
        try:
            detections = infer_objects(frame_bgr, self.model, self.conf, self.imgsz)
        except Exception as exc:
            raise InferenceError(f"Object detection failed: {exc}") from exc
        h, w = frame_bgr.shape[:2]
        return DetectionFrame(detections=detections, width=w, height=h)


def select_detector(config) -> tuple[FrameDetector, str]:
    """
    Pick the model variant when YOLO weights load, otherwise the heuristic.
    Returns (detector, reason) where reason is a short status string.
    """
    try:
        model = get_model(config.model_path)
    except Exception as exc:
        return (
            EdgeDensityDetector(config.edge_threshold, config.heuristic_poll_interval),
            f"Edge heuristic (model unavailable: {type(exc).__name__})",
        )
    return (
        ObjectDetector(model, config.conf_min, config.imgsz, config.model_poll_interval),
        "Object detection model loaded",
    )


def draw_detections(frame_bgr: np.ndarray, detections: list[Detection]) -> np.ndarray:
    """
    Draw bounding boxes and labels on a copy of the frame.
    Returns the annotated frame (BGR).
    """
    out = frame_bgr.copy()
    color_bgr = (246, 130, 59)
    for d in detections:
        x1, y1, x2, y2 = map(int, d.box)
        label = f"{d.label} {d.score:.2f}"
        cv2.rectangle(out, (x1, y1), (x2, y2), color_bgr, 2)
        (tw, th), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)
        cv2.rectangle(out, (x1, y1 - th - 8), (x1 + tw + 4, y1), color_bgr, -1)
        cv2.putText(
            out, label, (x1 + 2, y1 - 4),
            cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1
        )
    return out
