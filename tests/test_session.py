import asyncio
import random
import threading
import time

import numpy as np

from careguide.capture import CameraCapture, NoDevice
from careguide.catalog import Step, Task
from careguide.config import PlayerConfig
from careguide.detector import DetectionFrame, InferenceError
from careguide.logger import read_events
from careguide.narration import Narrator
from careguide.session import SessionRegistry, TaskRunner, TaskSession

POSITIVE = DetectionFrame(width=640, height=480, edge_count=1500, edge_positive=True)


class FakeCapture:
    """`read_errors` reads raise OSError before frames start coming."""

    def __init__(self, error=None, read_errors=0):
        self.error = error
        self.read_errors = read_errors
        self.reads = 0
        self.index = 0
        self.acquired = 0
        self.releases = 0
        self.active = False

    def acquire(self):
        self.acquired += 1
        if self.error:
            raise self.error
        self.active = True
        return self

    def read_frame(self):
        if not self.active:
            return None
        self.reads += 1
        if self.reads <= self.read_errors:
            raise OSError("camera unplugged")
        return np.zeros((480, 640, 3), dtype=np.uint8)

    def release(self):
        self.releases += 1
        self.active = False


class FakeDetector:
    """Replays scripted results (frames or exceptions), then repeats the last one."""

    def __init__(self, *results, poll_interval=0.01):
        self.results = list(results)
        self.poll_interval = poll_interval
        self.calls = 0

    def evaluate(self, frame):
        self.calls += 1
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        return item


def _task(n=2, action="edge_check", cap=None) -> Task:
    return Task(
        id="test-task",
        title="Test",
        steps=tuple(
            Step(id=f"s{i}", instruction=f"Do thing {i}", action=action, max_attempts=cap)
            for i in range(n)
        ),
    )


def _config(**kw) -> PlayerConfig:
    base = dict(
        fallback_timeout_min=30.0,
        fallback_timeout_max=30.0,
        settle_delay=0.0,
        manual_settle_delay=0.0,
    )
    base.update(kw)
    return PlayerConfig(**base)


def _runner(task, detector, capture=None, **kw) -> TaskRunner:
    return TaskRunner(
        task,
        detector=detector,
        capture=capture or FakeCapture(),
        narrator=Narrator(),
        config=kw.pop("config", _config()),
        rng=random.Random(7),
        **kw,
    )


async def _wait_for(cond, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not cond():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _types():
    return [e["type"] for e in read_events()]


def test_positive_evidence_walks_through_the_task():
    capture = FakeCapture()
    runner = _runner(_task(2), FakeDetector(POSITIVE), capture)

    async def run():
        await runner.start()
        await _wait_for(lambda: runner.state.task_complete)

    asyncio.run(run())
    assert runner.torn_down
    assert capture.releases == 1
    completes = [e for e in read_events() if e["type"] == "STEP_COMPLETE"]
    assert [e["step_id"] for e in completes] == ["s0", "s1"]
    assert all(e["reason"] == "progress" for e in completes)
    types = _types()
    assert types[0] == "SESSION_START"
    assert "CAMERA_READY" in types
    assert types[-2:] == ["TASK_COMPLETE", "SESSION_END"]


def test_fallback_timer_forces_completion():
    config = _config(fallback_timeout_min=0.05, fallback_timeout_max=0.06)
    runner = _runner(_task(1), FakeDetector(POSITIVE, poll_interval=60.0), config=config)

    async def run():
        await runner.start()
        await _wait_for(lambda: runner.state.task_complete)

    asyncio.run(run())
    complete = [e for e in read_events() if e["type"] == "STEP_COMPLETE"][0]
    assert complete["reason"] == "timeout"
    assert complete["progress"] == 100
    assert complete["attempts"] == 0


def test_failed_inference_is_not_an_attempt():
    detector = FakeDetector(InferenceError("model hiccup"), POSITIVE)
    runner = _runner(_task(1), detector)

    async def run():
        await runner.start()
        await _wait_for(lambda: runner.state.task_complete)

    asyncio.run(run())
    events = read_events()
    assert "INFERENCE_FAILURE" in [e["type"] for e in events]
    complete = [e for e in events if e["type"] == "STEP_COMPLETE"][0]
    assert complete["attempts"] == 1


def test_failed_frame_read_does_not_stop_polling():
    capture = FakeCapture(read_errors=2)
    runner = _runner(_task(1), FakeDetector(POSITIVE), capture)

    async def run():
        await runner.start()
        await _wait_for(lambda: runner.state.task_complete)

    asyncio.run(run())
    assert capture.reads >= 3
    events = read_events()
    failures = [e for e in events if e["type"] == "INFERENCE_FAILURE"]
    assert [f["stage"] for f in failures] == ["capture", "capture"]
    assert "camera unplugged" in failures[0]["detail"]
    complete = [e for e in events if e["type"] == "STEP_COMPLETE"][0]
    assert complete["reason"] == "progress"


def test_attempt_cap_completes_step():
    negative = DetectionFrame(width=640, height=480)
    runner = _runner(_task(1, action="any", cap=3), FakeDetector(negative))

    async def run():
        await runner.start()
        await _wait_for(lambda: runner.state.task_complete)

    asyncio.run(run())
    complete = [e for e in read_events() if e["type"] == "STEP_COMPLETE"][0]
    assert complete["reason"] == "attempt_cap"
    assert complete["attempts"] == 3


def test_camera_error_keeps_manual_completion_available():
    capture = FakeCapture(error=NoDevice("/dev/video0 does not exist"))
    runner = _runner(_task(2), FakeDetector(POSITIVE, poll_interval=60.0), capture)

    async def run():
        await runner.start()
        assert runner.state.camera_error == "No camera found"
        assert not runner.state.camera_active
        assert runner.controller.phase == "IN_PROGRESS"

        assert runner.complete_manually()
        assert not runner.complete_manually()
        await _wait_for(lambda: runner.controller.index == 1)

        capture.error = None
        assert await runner.retry_camera()
        assert runner.state.camera_error is None
        runner.teardown()

    asyncio.run(run())
    types = _types()
    assert "CAMERA_ERROR" in types
    assert "CAMERA_READY" in types
    manual = [e for e in read_events() if e["type"] == "STEP_COMPLETE"][0]
    assert manual["reason"] == "manual"


def test_teardown_is_idempotent():
    capture = FakeCapture()
    runner = _runner(_task(2), FakeDetector(POSITIVE, poll_interval=60.0), capture)

    async def run():
        await runner.start()
        runner.teardown()
        runner.teardown()
        assert not runner.complete_manually()

    asyncio.run(run())
    assert capture.releases == 1
    assert _types().count("SESSION_END") == 1


def test_fixed_repetition_re_narrates():
    runner = _runner(
        _task(1),
        FakeDetector(POSITIVE, poll_interval=60.0),
        repetition_mode="fixed",
        custom_interval=0.02,
    )

    async def run():
        await runner.start()
        await asyncio.sleep(0.15)
        count = runner.state.repeat_count
        snap = runner.snapshot()
        runner.teardown()
        return count, snap

    count, snap = asyncio.run(run())
    assert count >= 3
    assert snap.next_repeat_in is not None
    assert snap.step.id == "s0"


def test_per_step_repetition_uses_configured_default():
    runner = _runner(
        _task(1),
        FakeDetector(POSITIVE, poll_interval=60.0),
        config=_config(default_repetition=0.02),
    )

    async def run():
        await runner.start()
        await asyncio.sleep(0.15)
        count = runner.state.repeat_count
        runner.teardown()
        return count

    assert asyncio.run(run()) >= 3


def test_task_session_runs_on_background_thread():
    runner = _runner(_task(2), FakeDetector(POSITIVE))
    session = TaskSession(runner)
    session.start()
    deadline = time.monotonic() + 3.0
    snap = session.snapshot()
    while not snap.task_complete and time.monotonic() < deadline:
        time.sleep(0.02)
        snap = session.snapshot()
    assert snap.task_complete
    assert snap.step_index == 1
    session.stop()
    assert not session.active


class _SlowOpenDevice:
    def __init__(self):
        self.released = False

    def isOpened(self):
        return True

    def read(self):
        return True, np.zeros((480, 640, 3), dtype=np.uint8)

    def release(self):
        self.released = True


def test_stopping_while_the_camera_opens_releases_it():
    entered = threading.Event()
    gate = threading.Event()
    device = _SlowOpenDevice()

    def opener(index):
        entered.set()
        gate.wait(2.0)
        return device

    capture = CameraCapture(opener=opener, sleep=lambda s: None)
    runner = _runner(_task(1), FakeDetector(POSITIVE, poll_interval=60.0), capture)
    session = TaskSession(runner)
    session.start()
    assert entered.wait(2.0)

    session.stop()
    gate.set()
    deadline = time.monotonic() + 2.0
    while not device.released and time.monotonic() < deadline:
        time.sleep(0.01)

    assert device.released
    assert not capture.active
    assert runner.torn_down
    types = _types()
    assert "CAMERA_READY" not in types
    assert "CAMERA_ERROR" not in types
    assert types.count("SESSION_END") == 1


def test_stop_drains_queued_audio():
    runner = _runner(_task(1), FakeDetector(POSITIVE, poll_interval=60.0))
    session = TaskSession(runner)
    session.audio_queue.put_nowait(b"stale clip")
    session.stop()
    assert session.pop_audio() is None


class _FakeSession:
    def __init__(self):
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


def test_registry_keeps_one_session_per_view():
    registry = SessionRegistry()
    first = registry.open("player", _FakeSession)
    second = registry.open("player", _FakeSession)
    other = registry.open("elsewhere", _FakeSession)

    assert first.stopped
    assert second.started and not second.stopped
    assert registry.get("player") is second
    assert not other.stopped

    registry.close_all()
    assert second.stopped and other.stopped
    assert registry.get("player") is None
