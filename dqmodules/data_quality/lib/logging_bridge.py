from __future__ import annotations

import logging
from typing import Any

from dqservice import logging_utils

# Top-level keys scrubbed before a record leaves the engine; logging_utils
# applies its own deep redaction on top.
_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "authorization",
}


def _redact_record(record: dict[str, Any]) -> dict[str, Any]:
    redacted = dict(record)
    for k in list(redacted.keys()):
        lk = str(k).lower()
        if lk in _REDACT_KEYS or lk.endswith("_secret"):
            redacted[k] = "***REDACTED***"
    return redacted


def _emit(writer, fallback: str, level: int, record: dict[str, Any]) -> None:
    payload = _redact_record(record)
    try:
        writer(payload)
    except (OSError, TypeError, ValueError) as e:
        # The JSONL sink is best-effort; keep the record in stdlib logging instead.
        logging.getLogger(fallback).log(level, "%s (jsonl write failed: %s)", payload, e)


def activity(record: dict[str, Any]) -> None:
    """Structured activity record; falls back to stdlib logging if the JSONL write fails."""
    _emit(logging_utils.write_activity_log, "data_quality.activity", logging.INFO, record)


def error(record: dict[str, Any]) -> None:
    """Structured error record; falls back to stdlib logging if the JSONL write fails."""
    _emit(logging_utils.write_error_log, "data_quality.error", logging.ERROR, record)


def progress(record: dict[str, Any]) -> None:
    """Job progress snapshot; falls back to stdlib logging if the JSONL write fails."""
    _emit(logging_utils.write_progress_log, "data_quality.progress", logging.INFO, record)
