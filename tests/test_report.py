from careguide.logger import log_event, read_events
from careguide.report import events_to_csv, summarize_session


def _ev(t, ts, **kw):
    return {"type": t, "timestamp": ts, "task_id": "brushing-teeth", **kw}


EVENTS = [
    _ev("SESSION_START", "2026-01-01T10:00:00+00:00"),
    _ev("STEP_COMPLETE", "2026-01-01T10:00:05+00:00", step_id="step-1", reason="timeout"),
    _ev("SESSION_END", "2026-01-01T10:00:06+00:00"),
    _ev("SESSION_START", "2026-01-01T11:00:00+00:00"),
    _ev("STEP_COMPLETE", "2026-01-01T11:00:05+00:00", step_id="step-1", reason="progress", attempts=4, progress=85),
    _ev("INFERENCE_FAILURE", "2026-01-01T11:00:06+00:00", step_id="step-2"),
    _ev("STEP_COMPLETE", "2026-01-01T11:00:12+00:00", step_id="step-2", reason="attempt_cap", attempts=12, progress=30),
    _ev("STEP_COMPLETE", "2026-01-01T11:00:20+00:00", step_id="step-3", reason="manual", attempts=2, progress=10),
    _ev("TASK_COMPLETE", "2026-01-01T11:00:22+00:00", step_id="step-3"),
    _ev("SESSION_END", "2026-01-01T11:00:30+00:00", step_id="step-3"),
]


def test_summary_covers_last_run_only():
    s = summarize_session(EVENTS, "brushing-teeth")
    assert s["steps_completed"] == 3
    assert s["verified"] == 1
    assert s["forced"] == 2
    assert s["reasons"] == {"progress": 1, "attempt_cap": 1, "manual": 1}
    assert s["inference_failures"] == 1
    assert s["task_complete"]
    assert s["duration_seconds"] == 30.0
    assert s["steps"][0] == {"step_id": "step-1", "reason": "progress", "attempts": 4, "progress": 85}


def test_summary_of_other_task_is_empty():
    s = summarize_session(EVENTS, "washing-hands")
    assert s["steps_completed"] == 0
    assert s["verified_ratio"] == 0.0
    assert not s["task_complete"]


def test_summary_reads_event_log():
    log_event("SESSION_START", task_id="t")
    log_event("STEP_COMPLETE", {"reason": "progress"}, task_id="t", step_id="a")
    assert summarize_session(task_id="t")["verified"] == 1
    assert len(read_events(limit=1)) == 1


def test_csv_export():
    csv_text = events_to_csv(EVENTS)
    header = csv_text.splitlines()[0].split(",")
    assert "type" in header and "reason" in header
    assert len(csv_text.strip().splitlines()) == len(EVENTS) + 1
    assert events_to_csv([]) == ""
