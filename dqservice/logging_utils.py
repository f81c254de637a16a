# dqservice/logging_utils.py
from __future__ import annotations

import contextlib
import datetime as _dt
import json
import os
import socket
from collections.abc import Iterable
from typing import Any

# ---- Configuration ----------------------------------------------------------
#
# Read from the environment on every write so a test (or a long-running
# service) can point LOG_DIR somewhere else without re-importing.
#
#   LOG_DIR                   base directory (default /app/local/logs)
#   ACTIVITY_LOG_PREFIX       default "activity"
#   ERROR_LOG_PREFIX          default "error"
#   PROGRESS_LOG_PREFIX       default "progress"
#   ACTIVITY_LOG_MAX_BYTES    size rotation threshold; <= 0 disables it

ACTIVITY = "activity"
ERROR = "error"
PROGRESS = "progress"

_PREFIX_ENV = {
    ACTIVITY: "ACTIVITY_LOG_PREFIX",
    ERROR: "ERROR_LOG_PREFIX",
    PROGRESS: "PROGRESS_LOG_PREFIX",
}

# Case-insensitive substrings; any key containing one is scrubbed.
_DEFAULT_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "authorization",
    "cookie",
    "credential",
}

_REDACTED = "***REDACTED***"

_HOSTNAME = socket.gethostname()
_PID = os.getpid()


# ---- Public API --------------------------------------------------------------


def write_activity_log(record: dict[str, Any]) -> None:
    """
    Append one structured activity record to today's activity JSONL file.
    Never mutates the passed-in dict; may raise on I/O or serialization errors.
    """
    _write_jsonl(get_log_path(ACTIVITY), record)


def write_error_log(record: dict[str, Any]) -> None:
    """Append one structured error record, parallel to the activity log."""
    _write_jsonl(get_log_path(ERROR), record)


def write_progress_log(record: dict[str, Any]) -> None:
    """Append one job progress snapshot (what a dashboard subscriber would receive)."""
    _write_jsonl(get_log_path(PROGRESS), record)


def get_log_dir() -> str:
    return os.getenv("LOG_DIR", "/app/local/logs")


def get_log_path(stream: str = ACTIVITY, day: _dt.date | None = None) -> str:
    """Path of the daily file for `stream`: <LOG_DIR>/<prefix>-YYYY-MM-DD.jsonl."""
    env_key = _PREFIX_ENV.get(stream)
    if env_key is None:
        raise ValueError(f"unknown log stream {stream!r}")
    prefix = os.getenv(env_key, stream)
    day = day or _dt.date.today()
    return os.path.join(get_log_dir(), f"{prefix}-{day.isoformat()}.jsonl")


def get_activity_log_path() -> str:
    return get_log_path(ACTIVITY)


def redact(record: dict[str, Any], keys: set[str] | None = None) -> dict[str, Any]:
    """
    Redacted deep copy of `record`: values under keys containing any of `keys`
    (case-insensitive) are replaced, and bearer tokens inside strings are scrubbed.
    """
    return _redact_deep(record, keys or _DEFAULT_REDACT_KEYS)


# ---- Internal helpers --------------------------------------------------------


def _max_bytes() -> int:
    try:
        return int(os.getenv("ACTIVITY_LOG_MAX_BYTES", "0"))
    except ValueError:
        return 0


def _rotate_if_needed(path: str) -> None:
    """Size rotation only; date rotation is inherent in the filename."""
    limit = _max_bytes()
    if limit <= 0:
        return
    try:
        if os.path.getsize(path) < limit:
            return
    except FileNotFoundError:
        return
    stamp = _dt.datetime.now().strftime("%Y%m%d-%H%M%S")
    with contextlib.suppress(FileNotFoundError):
        os.replace(path, f"{path}.{stamp}")


def _scrub_bearer(value: str) -> str:
    if "bearer " not in value.lower():
        return value
    scheme, _, _rest = value.partition(" ")
    return f"{scheme} {_REDACTED}"


def _key_matches(name: str, patterns: Iterable[str]) -> bool:
    n = name.lower()
    return any(pat in n for pat in patterns)


def _redact_deep(value: Any, patterns: Iterable[str]) -> Any:
    if isinstance(value, dict):
        return {
            k: (_REDACTED if isinstance(k, str) and _key_matches(k, patterns) else _redact_deep(v, patterns))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact_deep(v, patterns) for v in value]
    if isinstance(value, str):
        return _scrub_bearer(value)
    return value


def _with_metadata(record: dict[str, Any]) -> dict[str, Any]:
    meta = record.get("_meta")
    out = dict(record)
    out["_meta"] = {**(meta if isinstance(meta, dict) else {}), "host": _HOSTNAME, "pid": _PID}
    return out


def _write_jsonl(path: str, record: dict[str, Any]) -> None:
    """
    Redact, add host/pid, rotate by size if configured, then append one line
    with a single O_APPEND write. One retry on a transient OSError.
    """
    payload = _with_metadata(_redact_deep(record, _DEFAULT_REDACT_KEYS))
    # Serialize before touching the file so a bad record leaves no partial line.
    data = (json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str) + "\n").encode("utf-8")

    def _append() -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        _rotate_if_needed(path)
        fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)

    try:
        _append()
    except OSError:
        _append()
