# dqservice/config_schema.py
from __future__ import annotations

import json
import logging
import os
from typing import Any

import yaml

from dqmodules.data_quality.lib.config import ConfigError, Settings

logger = logging.getLogger(__name__)

_TOP_LEVEL_KEYS = {"timezone", "executor_workers", "housekeeping", "sweep", "engine"}
_TRIGGER_FIELDS = ("interval", "cron")

DEFAULT_HOUSEKEEPING = {"interval": {"hours": 1}}
DEFAULT_SWEEP = {"interval": {"minutes": 1}}

__all__ = ["ConfigError", "load_config", "validate", "engine_settings"]


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Load the service configuration.

    Resolution order:
      1) Explicit `path` argument (if provided)
      2) os.environ['CONFIG_PATH'] (if set)
      3) Internal default (empty engine section)

    Returns:
        dict with every top-level key present:
        timezone, executor_workers, housekeeping, sweep, engine.
    """
    resolved_path = path or os.environ.get("CONFIG_PATH")
    if not resolved_path:
        logger.info("CONFIG_PATH not provided; using default config.")
        cfg: dict[str, Any] = {}
    else:
        cfg = _read_any(resolved_path)
    _apply_top_level_defaults(cfg)
    return cfg


def validate(cfg: dict[str, Any]) -> None:
    """
    Validate the configuration. Raise ConfigError on any problem.
    No prints, no sys.exit().
    """
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a dict.")

    unknown = set(cfg) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown top-level key(s): {sorted(unknown)}")

    tz = cfg.get("timezone")
    if tz is not None and not isinstance(tz, str):
        raise ConfigError("'timezone' must be a string if provided.")

    workers = cfg.get("executor_workers")
    if workers is not None:
        _to_int(workers, field="executor_workers", allow_zero=False)

    for key in ("housekeeping", "sweep"):
        _validate_trigger(cfg.get(key), key)

    engine = cfg.get("engine")
    if engine is not None and not isinstance(engine, dict):
        raise ConfigError("'engine' must be an object if provided.")
    engine_settings(cfg)


def engine_settings(cfg: dict[str, Any]) -> Settings:
    """Validated engine Settings for the `engine` section."""
    return Settings.from_env_and_kwargs(cfg.get("engine") or {})


def _apply_top_level_defaults(cfg: dict[str, Any]) -> None:
    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        cfg["timezone"] = os.environ.get("TZ", "UTC")
    cfg.setdefault("executor_workers", 10)
    cfg.setdefault("housekeeping", dict(DEFAULT_HOUSEKEEPING))
    cfg.setdefault("sweep", dict(DEFAULT_SWEEP))
    if cfg.get("engine") is None:
        cfg["engine"] = {}


def _validate_trigger(value: Any, key: str) -> None:
    # false/null disables the maintenance job
    if value in (None, False):
        return
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be an object with one of {', '.join(_TRIGGER_FIELDS)}, or false.")
    present = [k for k in _TRIGGER_FIELDS if k in value]
    if len(present) != 1:
        raise ConfigError(f"'{key}': exactly one trigger required among {', '.join(_TRIGGER_FIELDS)}.")
    trig = value[present[0]]
    if present[0] == "interval":
        if not isinstance(trig, dict) or not trig:
            raise ConfigError(f"'{key}': interval must be an object of time kwargs.")
        for k, v in trig.items():
            _to_int(v, field=f"{key}.interval.{k}", allow_zero=True)
    elif not isinstance(trig, (str, dict)):
        raise ConfigError(f"'{key}': cron must be a crontab string or an object.")


def _to_int(value: Any, *, field: str, allow_zero: bool) -> int:
    try:
        iv = int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"'{field}' must be an integer.") from err
    if iv < 0 or (iv == 0 and not allow_zero):
        raise ConfigError(f"'{field}' must be >= {'0' if allow_zero else '1'} (got {iv}).")
    return iv


def _read_any(path: str) -> dict[str, Any]:
    lower = path.lower()
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}: {e}") from e

    if lower.endswith((".yml", ".yaml")):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    else:
        # .json, or unknown extension tried as JSON
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level config in {path} must be a mapping/object.")
    return data
