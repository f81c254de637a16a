# tests/test_logging_utils.py
import json
import logging
import os

import pytest

from dqmodules.data_quality.lib import logging_bridge
from dqservice import logging_utils


def _read(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


def test_activity_path_uses_log_dir_and_prefix(frozen_utc):
    path = logging_utils.get_activity_log_path()
    assert os.path.dirname(path) == os.environ["LOG_DIR"]
    assert os.path.basename(path) == "activity-test-2025-01-01.jsonl"
    assert os.path.basename(logging_utils.get_log_path(logging_utils.ERROR)) == "error-test-2025-01-01.jsonl"
    with pytest.raises(ValueError):
        logging_utils.get_log_path("audit")


def test_records_are_redacted_and_tagged():
    record = {
        "event": "load",
        "api_key": "abc",
        "nested": {"db_password": "hunter2", "rows": [{"auth_token": "t"}]},
        "header": "Bearer eyJhbGciOi",
        "note": "plain text",
    }
    logging_utils.write_activity_log(record)

    (rec,) = _read(logging_utils.get_activity_log_path())
    assert rec["api_key"] == "***REDACTED***"
    assert rec["nested"]["db_password"] == "***REDACTED***"
    assert rec["nested"]["rows"][0]["auth_token"] == "***REDACTED***"
    assert rec["header"] == "Bearer ***REDACTED***"
    assert rec["note"] == "plain text"
    assert set(rec["_meta"]) == {"host", "pid"}
    # Caller's dict untouched
    assert record["api_key"] == "abc"


def test_size_rotation(monkeypatch):
    monkeypatch.setenv("ACTIVITY_LOG_MAX_BYTES", "10")
    logging_utils.write_activity_log({"n": 1})
    logging_utils.write_activity_log({"n": 2})

    path = logging_utils.get_activity_log_path()
    rotated = [p for p in os.listdir(os.environ["LOG_DIR"]) if p.startswith(os.path.basename(path) + ".")]
    assert len(rotated) == 1
    assert [r["n"] for r in _read(path)] == [2]


def test_bridge_writes_each_stream():
    logging_bridge.error({"component": "orchestrator", "job_id": "j1", "error": "boom", "secret": "s"})
    (rec,) = _read(logging_utils.get_log_path(logging_utils.ERROR))
    assert rec["job_id"] == "j1"
    assert rec["secret"] == "***REDACTED***"


def test_bridge_falls_back_to_stdlib_logging(monkeypatch, caplog):
    def broken(record):
        raise OSError("disk full")

    monkeypatch.setattr(logging_utils, "write_activity_log", broken)
    with caplog.at_level(logging.INFO, logger="data_quality.activity"):
        logging_bridge.activity({"event": "checkpoint", "password": "pw"})

    assert "disk full" in caplog.text
    assert "checkpoint" in caplog.text
    assert "pw'" not in caplog.text
