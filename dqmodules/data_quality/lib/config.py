from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .models import ProcessingMode, Severity
from .utils import as_str_list, getenv_str


# -----------------------------
# Exceptions
# -----------------------------
class ConfigError(ValueError):
    """Raised when provided kwargs/env cannot form a valid Settings."""


# -----------------------------
# Defaults
# -----------------------------
DEFAULT_STATE_DIR = "/app/local/state"
DEFAULT_DATASETS = ["Account", "Contact", "Opportunity", "Case"]


@dataclass
class Settings:
    """
    Canonical configuration for the data-quality engine.

    Paths default to files under $DQ_STATE_DIR (or /app/local/state):
        cursors.db   cursor store (cursor state, job records, pause flags)
        results.db   issues, duplicates, job history
        records.db   the SQLite record store read by `dq load` datasets
    """

    # Storage
    cursor_store_path: str = f"{DEFAULT_STATE_DIR}/cursors.db"
    results_path: str = f"{DEFAULT_STATE_DIR}/results.db"
    records_path: str = f"{DEFAULT_STATE_DIR}/records.db"
    ttl_hours: float = 48.0

    # Batch sizing
    initial_batch: int = 200
    min_batch: int = 50
    max_batch: int = 2000

    # Per-invocation compute budget
    max_rows_per_invocation: int = 50_000
    max_seconds_per_invocation: float = 60.0
    yield_fraction: float = 0.9

    # Datasets and modes
    datasets: list[str] = field(default_factory=lambda: list(DEFAULT_DATASETS))
    priority_order: list[str] = field(default_factory=list)
    compliance_datasets: list[str] = field(default_factory=list)
    incremental_window_days: int = 7
    priority_threshold: int | None = None  # HIGH_PRIORITY_FIRST skips records below this priority

    # Evaluators
    required_fields: dict[str, list[str]] = field(default_factory=dict)
    field_severity: dict[str, str] = field(default_factory=dict)
    match_keys: dict[str, list[str]] = field(default_factory=dict)
    mode_evaluators: dict[str, list[str]] = field(default_factory=dict)

    # Chaining
    continuation_delay_seconds: float = 0.0

    # ------------- convenience -------------
    @property
    def ttl_seconds(self) -> float:
        return self.ttl_hours * 3600.0

    def severity_for(self, dataset: str, field_name: str) -> str:
        """`Dataset.field` wins over a bare `field`; Medium when unset."""
        return (
            self.field_severity.get(f"{dataset}.{field_name}")
            or self.field_severity.get(field_name)
            or Severity.MEDIUM.value
        )

    # ------------- constructors -------------
    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None) -> Settings:
        """
        Build Settings from the `engine` config section with validation.

        Expected kwargs (all optional):

            state_dir: str                   # default $DQ_STATE_DIR or /app/local/state
            cursor_store_path / results_path / records_path: str
            ttl_hours: float = 48
            initial_batch: int = 200
            min_batch: int = 50
            max_batch: int = 2000
            max_rows_per_invocation: int = 50000
            max_seconds_per_invocation: float = 60
            yield_fraction: float = 0.9
            datasets: list[str] | "A,B,C"
            priority_order: list[str]
            compliance_datasets: list[str]
            incremental_window_days: int = 7
            priority_threshold: int | None  # HIGH_PRIORITY_FIRST only: minimum record priority
            required_fields: {dataset: [field, ...]}
            field_severity: {"field" | "Dataset.field": "Critical|High|Medium|Low"}
            match_keys: {dataset: [field, ...]}
            mode_evaluators: {MODE: [kind, ...]}
            continuation_delay_seconds: float = 0
        """
        kw = dict(kwargs or {})

        state_dir = str(kw.get("state_dir") or getenv_str("DQ_STATE_DIR", DEFAULT_STATE_DIR))

        def _path(key: str, filename: str) -> str:
            return str(kw.get(key) or os.path.join(state_dir, filename))

        datasets = as_str_list(kw.get("datasets")) or list(DEFAULT_DATASETS)

        try:
            settings = cls(
                cursor_store_path=_path("cursor_store_path", "cursors.db"),
                results_path=_path("results_path", "results.db"),
                records_path=_path("records_path", "records.db"),
                ttl_hours=float(kw.get("ttl_hours", 48)),
                initial_batch=int(kw.get("initial_batch", 200)),
                min_batch=int(kw.get("min_batch", 50)),
                max_batch=int(kw.get("max_batch", 2000)),
                max_rows_per_invocation=int(kw.get("max_rows_per_invocation", 50_000)),
                max_seconds_per_invocation=float(kw.get("max_seconds_per_invocation", 60)),
                yield_fraction=float(kw.get("yield_fraction", 0.9)),
                datasets=datasets,
                priority_order=as_str_list(kw.get("priority_order")),
                compliance_datasets=as_str_list(kw.get("compliance_datasets")),
                incremental_window_days=int(kw.get("incremental_window_days", 7)),
                priority_threshold=None if kw.get("priority_threshold") is None else int(kw["priority_threshold"]),
                required_fields=_str_list_map(kw.get("required_fields"), "required_fields"),
                field_severity=_severity_map(kw.get("field_severity")),
                match_keys=_str_list_map(kw.get("match_keys"), "match_keys"),
                mode_evaluators=_mode_map(kw.get("mode_evaluators")),
                continuation_delay_seconds=float(kw.get("continuation_delay_seconds", 0)),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid engine setting: {e}") from e

        _validate_settings(settings)
        return settings


# -----------------------------
# Helpers
# -----------------------------
def _str_list_map(value: Any, name: str) -> dict[str, list[str]]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"'{name}' must be an object mapping dataset -> list of fields.")
    return {str(k): as_str_list(v) for k, v in value.items()}


def _severity_map(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError("'field_severity' must be an object mapping field -> severity.")
    allowed = {s.value.lower(): s.value for s in Severity}
    out: dict[str, str] = {}
    for k, v in value.items():
        sev = allowed.get(str(v).strip().lower())
        if sev is None:
            raise ConfigError(f"field_severity[{k!r}]: unknown severity {v!r}.")
        out[str(k)] = sev
    return out


def _mode_map(value: Any) -> dict[str, list[str]]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError("'mode_evaluators' must be an object mapping mode -> list of evaluator kinds.")
    out: dict[str, list[str]] = {}
    for k, v in value.items():
        try:
            mode = ProcessingMode.parse(k)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        out[mode.value] = as_str_list(v)
    return out


def _validate_settings(s: Settings) -> None:
    for name in ("cursor_store_path", "results_path", "records_path"):
        if not getattr(s, name).strip():
            raise ConfigError(f"'{name}' cannot be empty.")
    if s.ttl_hours <= 0:
        raise ConfigError("'ttl_hours' must be > 0.")

    if s.min_batch < 1:
        raise ConfigError("'min_batch' must be >= 1.")
    if s.max_batch < s.min_batch:
        raise ConfigError("'max_batch' must be >= 'min_batch'.")
    if not s.min_batch <= s.initial_batch <= s.max_batch:
        raise ConfigError("'initial_batch' must lie within [min_batch, max_batch].")

    if s.max_rows_per_invocation < s.min_batch:
        raise ConfigError("'max_rows_per_invocation' must be >= 'min_batch'.")
    if s.max_seconds_per_invocation <= 0:
        raise ConfigError("'max_seconds_per_invocation' must be > 0.")
    if not 0 < s.yield_fraction <= 1:
        raise ConfigError("'yield_fraction' must be in (0, 1].")

    if not s.datasets:
        raise ConfigError("At least one dataset must be configured.")
    if len(set(s.datasets)) != len(s.datasets):
        raise ConfigError("'datasets' contains duplicates.")
    if s.incremental_window_days < 1:
        raise ConfigError("'incremental_window_days' must be >= 1.")
    if s.continuation_delay_seconds < 0:
        raise ConfigError("'continuation_delay_seconds' must be >= 0.")
