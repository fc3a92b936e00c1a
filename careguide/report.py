"""
Session report for CareGuide task runs.

Reads the event log and summarises one task run:
  - steps verified by the camera (progress reached the threshold)
  - steps forced through (attempt cap, fallback timeout, "Mark as complete")
  - inference failures and camera errors along the way

A run is the span from the last SESSION_START for the task to the next
SESSION_END (or the end of the log if the session is still running).
"""

import csv
import io
import json
from datetime import datetime
from typing import Any

from careguide.logger import read_events

FORCED_REASONS = ("attempt_cap", "timeout", "manual")


def _last_run(events: list[dict], task_id: str | None) -> list[dict]:
    if task_id is not None:
        events = [e for e in events if e.get("task_id") == task_id]
    start = 0
    for i, e in enumerate(events):
        if e.get("type") == "SESSION_START":
            start = i
    run = []
    for e in events[start:]:
        run.append(e)
        if e.get("type") == "SESSION_END":
            break
    return run


def _duration_seconds(run: list[dict]) -> float:
    if len(run) < 2:
        return 0.0
    try:
        t0 = datetime.fromisoformat(run[0]["timestamp"])
        t1 = datetime.fromisoformat(run[-1]["timestamp"])
    except (KeyError, TypeError, ValueError):
        return 0.0
    return max(0.0, (t1 - t0).total_seconds())


def summarize_session(
    events: list[dict] | None = None,
    task_id: str | None = None,
) -> dict[str, Any]:
    if events is None:
        events = read_events()
    run = _last_run(events, task_id)

    completions = [e for e in run if e.get("type") == "STEP_COMPLETE"]
    reasons: dict[str, int] = {}
    for e in completions:
        r = e.get("reason") or "unknown"
        reasons[r] = reasons.get(r, 0) + 1
    verified = reasons.get("progress", 0)
    forced = sum(reasons.get(r, 0) for r in FORCED_REASONS)

    return {
        "task_id": task_id or (run[0].get("task_id") if run else None),
        "steps_completed": len(completions),
        "verified": verified,
        "forced": forced,
        "reasons": reasons,
        "verified_ratio": round(verified / len(completions), 3) if completions else 0.0,
        "task_complete": any(e.get("type") == "TASK_COMPLETE" for e in run),
        "inference_failures": sum(1 for e in run if e.get("type") == "INFERENCE_FAILURE"),
        "camera_errors": sum(1 for e in run if e.get("type") == "CAMERA_ERROR"),
        "duration_seconds": _duration_seconds(run),
        "steps": [
            {
                "step_id": e.get("step_id"),
                "reason": e.get("reason"),
                "attempts": e.get("attempts"),
                "progress": e.get("progress"),
            }
            for e in completions
        ],
    }


def summary_to_json(summary: dict) -> str:
    return json.dumps(summary, indent=2, ensure_ascii=False)


def events_to_csv(events: list[dict] | None = None) -> str:
    if events is None:
        events = read_events()
    if not events:
        return ""
    all_keys = set()
    for e in events:
        all_keys.update(e.keys())
    all_keys = sorted(all_keys)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=all_keys, extrasaction="ignore")
    writer.writeheader()
    for e in events:
        writer.writerow(e)
    return buf.getvalue()
