"""
Task player session: the loop that ties camera, perception, progress and narration together.

================================================================================
HOW THIS SCRIPT WORKS (for studying)
================================================================================

One TaskRunner per task run. It lives on ONE asyncio event loop, so all
controller state is touched from a single thread. Anything that blocks
(opening the camera, reading a frame, running a detector) goes through
asyncio.to_thread; every timer is an asyncio task.

  start():
    1. acquire the camera (CameraCapture retries with back-off by itself).
       On failure: camera_error is shown, the step still begins so manual
       completion and the fallback timer keep working; retry_camera() tries again.
    2. _enter_step(): begin the step in the controller, then schedule its
       step-local tasks:
         - poll loop: every detector.poll_interval seconds read a frame,
           evaluate it, attach hands, controller.tick(). A failed read or
           evaluation is logged (INFERENCE_FAILURE) and the next tick tries again.
         - fallback timer: after uniform(min, max) seconds force the step
           complete with reason "timeout".
         - repetition timer: re-narrate the instruction every interval
           ("fixed" mode: custom interval; "ai" mode: the step's default).
       and narrate the instruction.

  COMPLETION → _finish_step(settle):
    cancel the step-local tasks, stop narration, log STEP_COMPLETE, sleep the
    settle delay (2s after detection, 1s after "Mark as complete"), then
    controller.advance(): either _enter_step() for the next step, or the task
    is complete and the session tears itself down.

  teardown(): idempotent. Cancels every task the runner owns (a start()
  still waiting on the camera included), closes narration, releases the
  camera, logs SESSION_END. A camera that finishes opening after teardown
  is closed again by CameraCapture itself.

TaskSession runs a TaskRunner on a background thread with its own event loop
so the Streamlit script (which re-runs top to bottom) can poke it with
thread-safe commands and read snapshot() once a second.

SessionRegistry keeps at most one TaskSession per view: opening a new one
stops the old one first, so two camera loops never run at once.
"""

import asyncio
import concurrent.futures
import queue
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from careguide.capture import CameraCapture, CaptureError
from careguide.catalog import Step, Task
from careguide.config import PlayerConfig, load_player_config
from careguide.constants import DEFAULT_REPETITION_SECONDS, REPETITION_AI, REPETITION_FIXED
from careguide.controller import StepProgressController
from careguide.detector import DetectionFrame, FrameDetector, InferenceError, select_detector
from careguide.hands import HandLandmarkStub, HandProvider, MediaPipeHandTracker
from careguide.logger import log_event
from careguide.narration import (
    NetworkAudioFallback,
    Narrator,
    Pyttsx3Synthesizer,
    SynthesisError,
)

COMMAND_TIMEOUT = 5.0


@dataclass(frozen=True)
class PlayerSnapshot:
    """Everything the player view renders, copied out of the loop thread."""
    task_id: str
    task_title: str
    step_index: int
    step_count: int
    step: Step
    phase: str
    progress: int
    attempts: int
    max_attempts: int
    status: str
    camera_active: bool
    camera_error: str | None
    narration_playing: bool
    narration_enabled: bool
    task_complete: bool
    repeat_count: int
    next_repeat_in: float | None
    detector: str
    evidence: str
    frame: np.ndarray | None = None
    detection: DetectionFrame | None = None


class TaskRunner:
    def __init__(
        self,
        task: Task,
        detector: FrameDetector,
        capture: CameraCapture,
        narrator: Narrator,
        hands: HandProvider | None = None,
        config: PlayerConfig | None = None,
        rng: random.Random | None = None,
        repetition_mode: str = REPETITION_AI,
        custom_interval: float = DEFAULT_REPETITION_SECONDS,
        detector_name: str = "",
    ):
        self.task = task
        self.detector = detector
        self.capture = capture
        self.narrator = narrator
        self.hands = hands
        self.config = config or PlayerConfig()
        self.rng = rng or random.Random()
        self.repetition_mode = repetition_mode
        self.custom_interval = custom_interval
        self.detector_name = detector_name or type(detector).__name__

        self.controller = StepProgressController(task)
        self._step_tasks: list[asyncio.Task] = []
        self._transition: asyncio.Task | None = None
        self._starting: asyncio.Task | None = None
        self._torn_down = False
        self._next_repeat_at: float | None = None

        self.last_frame: np.ndarray | None = None
        self.last_detection: DetectionFrame | None = None

    @property
    def state(self):
        return self.controller.state

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def _log(self, event_type: str, payload: dict | None = None) -> None:
        log_event(event_type, payload, task_id=self.task.id, step_id=self.controller.step.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._starting = _current_task()
        self._log("SESSION_START", {
            "detector": self.detector_name,
            "steps": len(self.task.steps),
            "repetition_mode": self.repetition_mode,
        })
        self.state.status = "Starting camera..."
        try:
            await self._acquire_camera()
        finally:
            self._starting = None
        if self._torn_down:
            return
        self._enter_step()

    async def _acquire_camera(self) -> bool:
        try:
            await asyncio.to_thread(self.capture.acquire)
        except CaptureError as exc:
            if self._torn_down:
                return False
            self.state.camera_active = False
            self.state.camera_error = str(exc)
            self.state.status = f"Camera unavailable: {exc}"
            self._log("CAMERA_ERROR", {"category": str(exc), "detail": exc.detail})
            return False
        if self._torn_down:
            self.capture.release()
            return False
        self.state.camera_active = True
        self.state.camera_error = None
        self._log("CAMERA_READY", {"index": self.capture.index})
        return True

    def teardown(self) -> None:
        """Cancel every owned task and narration, release the camera. Idempotent."""
        if self._torn_down:
            return
        self._torn_down = True
        self._cancel_step_tasks()
        if self._transition is not None and self._transition is not _current_task():
            self._transition.cancel()
        self._transition = None
        if self._starting is not None and self._starting is not _current_task():
            self._starting.cancel()
        self._starting = None
        self.narrator.close()
        self.capture.release()
        self.state.camera_active = False
        self.state.narration_playing = False
        self._log("SESSION_END", {
            "task_complete": self.state.task_complete,
            "step_index": self.controller.index,
        })

    # ------------------------------------------------------------------
    # Step scheduling
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        t = asyncio.get_running_loop().create_task(coro)
        self._step_tasks.append(t)
        return t

    def _cancel_step_tasks(self) -> None:
        current = _current_task()
        for t in self._step_tasks:
            if t is not current and not t.done():
                t.cancel()
        self._step_tasks.clear()
        self._next_repeat_at = None

    def _enter_step(self) -> None:
        step = self.controller.begin_step()
        self.state.status = step.instruction
        self._log("STEP_START", {
            "index": self.controller.index,
            "max_attempts": self.controller.progress.max_attempts,
        })
        timeout = self.rng.uniform(
            self.config.fallback_timeout_min, self.config.fallback_timeout_max,
        )
        self._spawn(self._poll_loop())
        self._spawn(self._fallback_timer(timeout))
        self._spawn(self._repetition_loop())
        self._speak_instruction()

    def _repetition_interval(self) -> float:
        if self.repetition_mode == REPETITION_FIXED:
            return self.custom_interval
        return self.task.repetition_seconds(
            self.controller.index, self.config.default_repetition,
        )

    def _speak_instruction(self) -> None:
        if self.controller.phase != "IN_PROGRESS":
            return
        self.state.repeat_count += 1
        self.narrator.speak(self.controller.step.narration)
        self.state.narration_playing = self.narrator.playing

    def _schedule_transition(self, settle: float) -> None:
        if self._transition is not None and not self._transition.done():
            return
        self._transition = asyncio.get_running_loop().create_task(self._finish_step(settle))

    async def _finish_step(self, settle: float) -> None:
        self._cancel_step_tasks()
        self.narrator.cancel()
        self.state.narration_playing = False
        p = self.controller.progress
        self._log("STEP_COMPLETE", {
            "reason": p.reason,
            "attempts": p.attempts,
            "progress": p.progress,
        })
        self.state.status = "Step complete! Moving on..."
        await asyncio.sleep(settle)
        if self._torn_down:
            return
        if self.controller.advance():
            self._enter_step()
            return
        if self.state.task_complete:
            self.state.status = "Task complete! Great job!"
            self._log("TASK_COMPLETE", {"steps": len(self.task.steps)})
            self.teardown()

    # ------------------------------------------------------------------
    # Step-local tasks
    # ------------------------------------------------------------------

    def _observe(self, frame: np.ndarray) -> DetectionFrame:
        result = self.detector.evaluate(frame)
        if self.hands is not None:
            try:
                result.hands = self.hands.detect(frame)
            except Exception as exc:
                raise InferenceError(f"Hand tracking failed: {exc}") from exc
        return result

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.detector.poll_interval)
            try:
                frame = await asyncio.to_thread(self.capture.read_frame)
            except Exception as exc:
                self._log("INFERENCE_FAILURE", {
                    "stage": "capture", "detail": f"{type(exc).__name__}: {exc}",
                })
                continue
            if frame is None:
                continue
            self.last_frame = frame
            try:
                observed = await asyncio.to_thread(self._observe, frame)
            except Exception as exc:
                self._log("INFERENCE_FAILURE", {
                    "stage": "detect", "detail": f"{type(exc).__name__}: {exc}",
                })
                continue
            self.last_detection = observed
            result = self.controller.tick(observed)
            if result is None:
                return
            if self.config.debug:
                self._log("TICK", {
                    "polarity": result.evidence.polarity,
                    "delta": result.evidence.delta,
                    "progress": result.progress,
                    "attempts": result.attempts,
                    "detail": result.evidence.detail,
                })
            if result.completed:
                self._schedule_transition(self.config.settle_delay)
                return

    async def _fallback_timer(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.controller.force_complete("timeout"):
            self._schedule_transition(self.config.settle_delay)

    async def _repetition_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            interval = self._repetition_interval()
            self._next_repeat_at = loop.time() + interval
            await asyncio.sleep(interval)
            if self.controller.phase != "IN_PROGRESS":
                return
            self._speak_instruction()

    # ------------------------------------------------------------------
    # Commands (called on the loop thread)
    # ------------------------------------------------------------------

    def enable_voice(self) -> None:
        """User gesture: unlock narration and read the current instruction."""
        self.narrator.enable()
        self._speak_instruction()

    def repeat_instruction(self) -> None:
        self._speak_instruction()

    def complete_manually(self) -> bool:
        if self._torn_down or not self.controller.force_complete("manual"):
            return False
        self._schedule_transition(self.config.manual_settle_delay)
        return True

    async def retry_camera(self) -> bool:
        if self._torn_down:
            return False
        self.state.status = "Retrying camera..."
        ok = await self._acquire_camera()
        if ok and self.controller.phase == "IN_PROGRESS":
            self.state.status = self.controller.step.instruction
        return ok

    def set_volume(self, volume: float) -> None:
        self.narrator.volume = max(0.0, min(1.0, volume))

    def snapshot(self) -> PlayerSnapshot:
        p = self.controller.progress
        next_in = None
        if self._next_repeat_at is not None:
            next_in = max(0.0, self._next_repeat_at - asyncio.get_running_loop().time())
        evidence = p.last_evidence.detail if p is not None else ""
        progress = p.progress if p is not None else (100 if self.state.task_complete else 0)
        self.state.narration_playing = self.narrator.playing
        return PlayerSnapshot(
            task_id=self.task.id,
            task_title=self.task.title,
            step_index=self.controller.index,
            step_count=len(self.task.steps),
            step=self.controller.step,
            phase=self.controller.phase,
            progress=progress,
            attempts=p.attempts if p is not None else 0,
            max_attempts=p.max_attempts if p is not None else 0,
            status=self.state.status,
            camera_active=self.state.camera_active,
            camera_error=self.state.camera_error,
            narration_playing=self.state.narration_playing,
            narration_enabled=self.narrator.enabled,
            task_complete=self.state.task_complete,
            repeat_count=self.state.repeat_count,
            next_repeat_in=next_in,
            detector=self.detector_name,
            evidence=evidence,
            frame=self.last_frame,
            detection=self.last_detection,
        )


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


# ──────────────────────────────────────────────
# Background-thread host for the Streamlit front-end
# ──────────────────────────────────────────────

def _drain(q: queue.Queue) -> None:
    while True:
        try:
            q.get_nowait()
        except queue.Empty:
            return


def _offer(q: queue.Queue, item: Any) -> None:
    """Put without blocking; drop the oldest item when full."""
    if q.full():
        try:
            q.get_nowait()
        except queue.Empty:
            pass
    try:
        q.put_nowait(item)
    except queue.Full:
        pass


class TaskSession:
    """Runs one TaskRunner on a private event loop in a daemon thread."""

    def __init__(self, runner: TaskRunner, audio_queue: queue.Queue | None = None):
        self.runner = runner
        self.audio_queue: queue.Queue[bytes] = audio_queue or queue.Queue(maxsize=4)
        self._loop = asyncio.new_event_loop()
        self._thread: threading.Thread | None = None
        self._stopped = False

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"task-session-{self.runner.task.id}", daemon=True,
        )
        self._thread.start()
        asyncio.run_coroutine_threadsafe(self.runner.start(), self._loop)

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            pending = asyncio.all_tasks(self._loop)
            for t in pending:
                t.cancel()
            if pending:
                self._loop.run_until_complete(
                    asyncio.gather(*pending, return_exceptions=True),
                )
            self._loop.close()

    def _call(self, fn: Callable, *args, timeout: float = COMMAND_TIMEOUT):
        """Run a plain function on the loop thread and wait for its result."""
        async def _invoke():
            return fn(*args)
        fut = asyncio.run_coroutine_threadsafe(_invoke(), self._loop)
        return fut.result(timeout=timeout)

    def enable_voice(self) -> None:
        self._call(self.runner.enable_voice)

    def repeat_instruction(self) -> None:
        self._call(self.runner.repeat_instruction)

    def complete_manually(self) -> bool:
        return self._call(self.runner.complete_manually)

    def set_volume(self, volume: float) -> None:
        self._call(self.runner.set_volume, volume)

    def retry_camera(self) -> concurrent.futures.Future:
        """Returns immediately; the retry may take several seconds."""
        return asyncio.run_coroutine_threadsafe(self.runner.retry_camera(), self._loop)

    def snapshot(self) -> PlayerSnapshot:
        return self._call(self.runner.snapshot)

    def pop_audio(self) -> bytes | None:
        """Next fallback narration clip for the browser to play, if any."""
        try:
            return self.audio_queue.get_nowait()
        except queue.Empty:
            return None

    def stop(self, timeout: float = COMMAND_TIMEOUT) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._thread is None:
            self.runner.teardown()
            self._loop.close()
        else:
            self._call(self.runner.teardown, timeout=timeout)
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=timeout)
        _drain(self.audio_queue)


class SessionRegistry:
    """At most one live TaskSession per view key."""

    def __init__(self):
        self._sessions: dict[str, TaskSession] = {}
        self._lock = threading.Lock()

    def open(self, view_key: str, factory: Callable[[], TaskSession]) -> TaskSession:
        """Stop the view's previous session (if any), then start a new one."""
        with self._lock:
            previous = self._sessions.pop(view_key, None)
            if previous is not None:
                previous.stop()
            session = factory()
            session.start()
            self._sessions[view_key] = session
            return session

    def get(self, view_key: str) -> TaskSession | None:
        return self._sessions.get(view_key)

    def close(self, view_key: str) -> None:
        with self._lock:
            session = self._sessions.pop(view_key, None)
        if session is not None:
            session.stop()

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for s in sessions:
            s.stop()


def build_session(
    task: Task,
    config: PlayerConfig | None = None,
    repetition_mode: str = REPETITION_AI,
    custom_interval: float = DEFAULT_REPETITION_SECONDS,
) -> TaskSession:
    """Wire real devices: webcam, YOLO or edge heuristic, pyttsx3 with network fallback."""
    cfg = config or load_player_config()
    audio: queue.Queue[bytes] = queue.Queue(maxsize=4)

    detector, reason = select_detector(cfg)
    capture = CameraCapture(
        index=cfg.camera_index,
        max_attempts=cfg.camera_attempts,
        backoff=cfg.camera_backoff,
        ready_timeout=cfg.camera_ready_timeout,
    )
    try:
        synthesizer = Pyttsx3Synthesizer()
    except SynthesisError as exc:
        log_event("SYNTHESIS_FAILURE", {"detail": str(exc)}, task_id=task.id)
        synthesizer = None
    narrator = Narrator(
        synthesizer=synthesizer,
        fallback=NetworkAudioFallback(
            lambda clip: _offer(audio, clip),
            lang=cfg.voice_lang,
            flush=lambda: _drain(audio),
        ),
        lang=cfg.voice_lang,
        rate=cfg.speech_rate,
        volume=cfg.volume,
    )
    tracker = MediaPipeHandTracker()
    hands: HandProvider = tracker if tracker.available else HandLandmarkStub()

    runner = TaskRunner(
        task,
        detector=detector,
        capture=capture,
        narrator=narrator,
        hands=hands,
        config=cfg,
        repetition_mode=repetition_mode,
        custom_interval=custom_interval,
        detector_name=reason,
    )
    return TaskSession(runner, audio_queue=audio)
