# dqmodules/data_quality/lib/__init__.py
from __future__ import annotations

# Importing the package registers the built-in evaluators.
from . import evaluators as _evaluators  # noqa: F401

# Re-export commonly-used types for convenience
from .config import ConfigError, Settings
from .cursor import Cursor, RecordSource
from .cursor_store import CursorStore
from .models import Direction, Job, JobStatus, ProcessingMode
from .orchestrator import InvocationResult, MultiCursorOrchestrator
from .pagination import PageResult, PaginationService

__all__ = [
    "ConfigError",
    "Cursor",
    "CursorStore",
    "Direction",
    "InvocationResult",
    "Job",
    "JobStatus",
    "MultiCursorOrchestrator",
    "PageResult",
    "PaginationService",
    "ProcessingMode",
    "RecordSource",
    "Settings",
]
