from __future__ import annotations

from .base import BaseEvaluator

# Global in-process registry: kind -> evaluator class
_REGISTRY: dict[str, type[BaseEvaluator]] = {}


def register(cls: type[BaseEvaluator]) -> type[BaseEvaluator]:
    """
    Class decorator or direct call to register an evaluator class.
    Requires cls.kind to be a non-empty string.
    """
    kind = getattr(cls, "kind", "") or ""
    if not isinstance(kind, str) or not kind.strip():
        raise ValueError(f"Cannot register evaluator {cls!r}: missing/empty 'kind'.")
    key = kind.strip().lower()
    if key in _REGISTRY and _REGISTRY[key] is not cls:
        raise ValueError(f"Evaluator kind {key!r} already registered to {_REGISTRY[key]!r}.")
    _REGISTRY[key] = cls
    return cls


def get(kind: str) -> type[BaseEvaluator]:
    """
    Look up an evaluator class by kind (case-insensitive).
    Raises KeyError if not found.
    """
    key = (kind or "").strip().lower()
    if key not in _REGISTRY:
        raise KeyError(f"No evaluator registered for kind {kind!r}.")
    return _REGISTRY[key]


def all_kinds() -> dict[str, type[BaseEvaluator]]:
    return dict(_REGISTRY)
