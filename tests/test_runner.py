# tests/test_runner.py
import json
import re

import pytest

from dqmodules.data_quality.lib.models import JobStatus
from dqmodules.data_quality.lib.orchestrator import InvocationResult
from dqservice import logging_utils, runner


def _activity_records():
    with open(logging_utils.get_activity_log_path(), encoding="utf-8") as f:
        return [json.loads(line) for line in f]


def test_runner_records_successful_invocation(frozen_utc):
    def invoke(job_id):
        return InvocationResult(
            job_id=job_id, status=JobStatus.RUNNING, needs_continuation=True, iterations=1, records_fetched=200
        )

    result = runner.run_invocation_once(invoke, "job-1", trigger_type="start", job_context={"mode": "FULL_SCAN"})
    assert result.records_fetched == 200

    rec = _activity_records()[-1]
    assert rec["source"] == "runner"
    assert rec["ok"] is True
    assert rec["job_id"] == "job-1"
    assert rec["trigger_type"] == "start"
    assert rec["status"] == "Running"
    assert rec["needs_continuation"] is True
    assert rec["context"]["mode"] == "FULL_SCAN"
    assert re.match(r"^[a-f0-9]{32}$", rec["run_id"])


def test_runner_records_and_reraises_failures():
    def invoke(job_id):
        raise RuntimeError("store went away")

    with pytest.raises(RuntimeError, match="store went away"):
        runner.run_invocation_once(invoke, "job-2")

    rec = _activity_records()[-1]
    assert rec["ok"] is False
    assert rec["exception_type"] == "RuntimeError"
    assert "store went away" in rec["error"]
