"""
Event logging: append events to logs/events.jsonl and read them back.

================================================================================
HOW THIS SCRIPT WORKS (for studying)
================================================================================

Everything notable that happens in a task player session (step start, step
completion and why, camera errors, failed detection ticks, narration falling
back to network audio) and in the guidance chat (malformed responses) is
written as one JSON object per line in logs/events.jsonl. The session report
(careguide.report) reads this file back to summarise a run, and you can open
it in a text editor to debug.

  EVENT RECORD SHAPE:
  Every record has: timestamp (ISO UTC), type, task_id, step_id, plus whatever
  extra fields were in the payload (e.g. reason, attempts, progress, detail).
  - type: "SESSION_START" | "STEP_START" | "TICK" | "STEP_COMPLETE" |
          "TASK_COMPLETE" | "CAMERA_READY" | "CAMERA_ERROR" |
          "INFERENCE_FAILURE" | "SYNTHESIS_FAILURE" |
          "NARRATION_FALLBACK_FAILURE" | "GUIDANCE_ERROR" | "SESSION_END"

  FUNCTIONS:
  - log_event(event_type, payload, task_id=None, step_id=None): appends one
    line. Creates the logs/ directory if needed.
  - read_events(limit=None): parses the file back into a list of dicts. If
    limit is set, returns only the last limit lines.

  FILE LOCATION:
  LOG_FILE is relative to the current working directory unless absolute.
  Tests point it at a temporary file.
"""
import json
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Any

from careguide.constants import EVENTS_LOG_PATH

LOG_FILE = Path(EVENTS_LOG_PATH)

# The session loop thread and the Streamlit thread both append
_write_lock = threading.Lock()


def _log_path() -> Path:
    p = Path(LOG_FILE)
    if not p.is_absolute():
        p = Path.cwd() / p
    return p


def _ensure_log_dir() -> None:
    p = _log_path().parent
    p.mkdir(parents=True, exist_ok=True)


def log_event(
    event_type: str,
    payload: dict[str, Any] | None = None,
    task_id: str | None = None,
    step_id: str | None = None,
) -> None:
    """
    Append one event to the event log.
    payload is merged into the record (timestamp, type, task_id, step_id added).
    """
    record = {
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "type": event_type,
        "task_id": task_id,
        "step_id": step_id,
        **(payload or {}),
    }
    line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
    with _write_lock:
        _ensure_log_dir()
        with open(_log_path(), "a", encoding="utf-8") as f:
            f.write(line)


def read_events(limit: int | None = None) -> list[dict]:
    """
    Read events from the event log.
    If limit is set, return only the last limit lines.
    """
    p = _log_path()
    if not p.exists():
        return []
    lines = p.read_text(encoding="utf-8").strip().split("\n")
    lines = [ln for ln in lines if ln]
    if limit is not None:
        lines = lines[-limit:]
    out = []
    for ln in lines:
        try:
            out.append(json.loads(ln))
        except json.JSONDecodeError:
            continue
    return out
