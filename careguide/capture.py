"""
Media capture: open the camera with retry/back-off, hand out frames, release.

Only this module starts or stops the camera. The task player reads
`active` and calls read_frame(); it never touches the device directly.

  acquire()      up to `max_attempts` tries, sleeping attempt * backoff seconds
                 between them. The stream counts as ready once a first frame
                 arrives within `ready_timeout`. After the last attempt the
                 failure is raised as a CaptureError subclass whose str() is a
                 short message for the UI ("Permission denied", ...).
  read_frame()   latest BGR frame, or None.
  release()      stop the device. Idempotent. A release() that lands while
                 acquire() is still opening makes that acquire() close the new
                 device itself and raise AcquireAborted.

The device opener and sleep function are injectable so tests can run without
a camera or real delays.
"""

import errno
import os
import threading
import time
from typing import Any, Callable, Protocol

import cv2
import numpy as np

from careguide.constants import (
    CAMERA_BACKOFF_SECONDS,
    CAMERA_HEIGHT,
    CAMERA_MAX_ATTEMPTS,
    CAMERA_READY_TIMEOUT,
    CAMERA_WIDTH,
)


class CaptureError(RuntimeError):
    """Camera could not be acquired. str(err) is the user-facing category."""
    category = "Camera error"

    def __init__(self, detail: str = ""):
        super().__init__(self.category)
        self.detail = detail


class PermissionDenied(CaptureError):
    category = "Permission denied"


class NoDevice(CaptureError):
    category = "No camera found"


class DeviceBusy(CaptureError):
    category = "Camera in use"


class CaptureTimeout(CaptureError):
    category = "Camera timeout"


class AcquireAborted(CaptureError):
    category = "Camera released"


class VideoDevice(Protocol):
    def isOpened(self) -> bool: ...
    def read(self) -> tuple[bool, Any]: ...
    def release(self) -> None: ...


def classify_capture_error(exc: BaseException) -> CaptureError:
    """Map an underlying failure onto the capture error taxonomy."""
    if isinstance(exc, CaptureError):
        return exc
    if isinstance(exc, PermissionError):
        return PermissionDenied(str(exc))
    if isinstance(exc, FileNotFoundError):
        return NoDevice(str(exc))
    if isinstance(exc, TimeoutError):
        return CaptureTimeout(str(exc))
    if isinstance(exc, OSError) and exc.errno == errno.EBUSY:
        return DeviceBusy(str(exc))
    return CaptureError(f"{type(exc).__name__}: {exc}")


def _diagnose_open_failure(index: int) -> CaptureError:
    """OpenCV only says "not opened"; on Linux the device node tells us why."""
    node = f"/dev/video{index}"
    if not os.path.exists(node):
        return NoDevice(f"{node} does not exist")
    if not os.access(node, os.R_OK | os.W_OK):
        return PermissionDenied(f"no read/write access to {node}")
    return DeviceBusy(f"{node} exists but could not be opened")


def open_camera(
    index: int = 0,
    width: int = CAMERA_WIDTH,
    height: int = CAMERA_HEIGHT,
) -> cv2.VideoCapture:
    """Open a webcam, trying DirectShow first where it exists. Raises CaptureError."""
    apis = (cv2.CAP_DSHOW, cv2.CAP_ANY) if hasattr(cv2, "CAP_DSHOW") else (cv2.CAP_ANY,)
    for api in apis:
        cap = cv2.VideoCapture(index, api)
        if cap is not None and cap.isOpened():
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            return cap
        if cap is not None:
            cap.release()
    raise _diagnose_open_failure(index)


class CameraCapture:
    def __init__(
        self,
        index: int = 0,
        opener: Callable[[int], VideoDevice] | None = None,
        max_attempts: int = CAMERA_MAX_ATTEMPTS,
        backoff: float = CAMERA_BACKOFF_SECONDS,
        ready_timeout: float = CAMERA_READY_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_active_change: Callable[[bool], None] | None = None,
    ):
        self.index = index
        self.opener = opener or open_camera
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.ready_timeout = ready_timeout
        self.sleep = sleep
        self.clock = clock
        self.on_active_change = on_active_change

        self._lock = threading.Lock()
        self._device: VideoDevice | None = None
        self._active = False
        # bumped by every release(); acquire() only keeps a device opened in its own generation
        self._generation = 0
        self.last_error: CaptureError | None = None

    @property
    def active(self) -> bool:
        return self._active

    def _swap_active(self, value: bool) -> bool:
        """Set the flag with the lock held. Returns True if it changed."""
        changed = value != self._active
        self._active = value
        return changed

    def _notify(self, value: bool, changed: bool) -> None:
        if changed and self.on_active_change is not None:
            self.on_active_change(value)

    def _wait_ready(self, device: VideoDevice) -> np.ndarray:
        deadline = self.clock() + self.ready_timeout
        while True:
            ok, frame = device.read()
            if ok and frame is not None:
                return frame
            if self.clock() >= deadline:
                raise CaptureTimeout("no frame before ready timeout")
            self.sleep(0.05)

    def acquire(self) -> "CameraCapture":
        """Open the camera, retrying with linear back-off. Raises CaptureError."""
        self.release()
        with self._lock:
            generation = self._generation
        last: CaptureError = CaptureError("no attempt made")
        for attempt in range(1, self.max_attempts + 1):
            if self._generation != generation:
                raise AcquireAborted("released during acquire")
            device = None
            try:
                device = self.opener(self.index)
                self._wait_ready(device)
            except Exception as exc:
                last = classify_capture_error(exc)
                if device is not None:
                    device.release()
                if attempt < self.max_attempts:
                    self.sleep(self.backoff * attempt)
                continue
            with self._lock:
                aborted = self._generation != generation
                if not aborted:
                    self._device = device
                    changed = self._swap_active(True)
            if aborted:
                device.release()
                raise AcquireAborted("released during acquire")
            self.last_error = None
            self._notify(True, changed)
            return self
        self.last_error = last
        with self._lock:
            changed = self._swap_active(False)
        self._notify(False, changed)
        raise last

    def read_frame(self) -> np.ndarray | None:
        with self._lock:
            device = self._device
            if device is None:
                return None
            ok, frame = device.read()
        return frame if ok else None

    def release(self) -> None:
        with self._lock:
            self._generation += 1
            device, self._device = self._device, None
            changed = self._swap_active(False)
        if device is not None:
            device.release()
        self._notify(False, changed)
