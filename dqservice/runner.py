# dqservice/runner.py
from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from dqservice import logging_utils

log = logging.getLogger(__name__)

R = TypeVar("R")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _result_fields(result: Any) -> dict[str, Any]:
    """Pull the interesting attributes off an InvocationResult-like value."""
    out: dict[str, Any] = {}
    for name in ("status", "needs_continuation", "iterations", "records_fetched", "batch_size", "error_message"):
        if hasattr(result, name):
            value = getattr(result, name)
            out[name] = getattr(value, "value", value)
    return out


def _emit_activity(record: dict[str, Any]) -> None:
    try:
        logging_utils.write_activity_log(record)
    except (OSError, TypeError, ValueError) as e:
        log.warning("write_activity_log failed: %s", e)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def run_invocation_once(
    invoke: Callable[[str], R],
    job_id: str,
    trigger_type: str = "chain",
    job_context: dict[str, object] | None = None,
) -> R:
    """
    Execute one orchestrator invocation for `job_id` and record it.

    Every call gets a run id; the activity log receives one record with the
    outcome and duration whether the invocation returns or raises.

    Raises:
        Whatever `invoke` raises (the caller decides how to report it).
    """
    run_id = uuid.uuid4().hex
    context: dict[str, Any] = {"run_id": run_id, "job_id": job_id, "trigger_type": trigger_type}
    if job_context:
        context.update({k: v for k, v in job_context.items() if k not in context})

    log.info("Invocation[%s] starting for job %s (%s)", run_id, job_id, trigger_type)
    t0 = time.perf_counter()
    exc: BaseException | None = None
    result: R | None = None
    try:
        result = invoke(job_id)
    except BaseException as e:
        exc = e
    duration_ms = int((time.perf_counter() - t0) * 1000)

    record: dict[str, Any] = {
        "ts": now_iso(),
        "source": "runner",
        "event": "invocation",
        "run_id": run_id,
        "job_id": job_id,
        "trigger_type": trigger_type,
        "ok": exc is None,
        "duration_ms": duration_ms,
        "context": context,
    }
    if exc is not None:
        record["error"] = repr(exc)
        record["exception_type"] = type(exc).__name__
    else:
        record.update(_result_fields(result))
    _emit_activity(record)

    if exc is not None:
        log.info("Invocation[%s] for job %s raised %s after %dms", run_id, job_id, type(exc).__name__, duration_ms)
        raise exc

    log.info("Invocation[%s] for job %s finished in %dms", run_id, job_id, duration_ms)
    return result  # type: ignore[return-value]
