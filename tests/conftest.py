import pytest

import careguide.logger


@pytest.fixture(autouse=True)
def event_log(tmp_path, monkeypatch):
    """Point the event log at a per-test file."""
    path = tmp_path / "events.jsonl"
    monkeypatch.setattr(careguide.logger, "LOG_FILE", path)
    return path
