"""
Progress notifications.

The orchestrator publishes one ProgressEvent per checkpoint. Delivery is
fire-and-forget: a subscriber that raises is logged and skipped, never
allowed to fail the invocation. Every event is also appended to the JSONL
progress log so out-of-process observers can follow a job.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from . import logging_bridge
from .models import Job
from .utils import now_iso

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    mode: str
    status: str
    processed: dict[str, int]
    totals: dict[str, int]
    processed_records: int
    total_records: int
    issues_found: int
    duplicates_found: int
    average_quality_score: float
    execution_count: int
    checkpoint_seq: int
    batch_size: int
    error_message: str | None = None
    ts: str = field(default_factory=now_iso)

    @classmethod
    def from_job(cls, job: Job) -> ProgressEvent:
        return cls(
            job_id=job.job_id,
            mode=job.mode.value,
            status=job.status.value,
            processed=dict(job.processed),
            totals=dict(job.totals),
            processed_records=job.processed_records,
            total_records=job.total_records,
            issues_found=job.issues_found,
            duplicates_found=job.duplicates_found,
            average_quality_score=round(job.average_quality_score, 4),
            execution_count=job.execution_count,
            checkpoint_seq=job.checkpoint_seq,
            batch_size=job.batch_size,
            error_message=job.error_message,
        )

    @property
    def percent_complete(self) -> float:
        if self.total_records <= 0:
            return 100.0 if self.status == "Completed" else 0.0
        return round(100.0 * self.processed_records / self.total_records, 2)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["percent_complete"] = self.percent_complete
        return d


Subscriber = Callable[[ProgressEvent], None]


class ProgressBus:
    """In-process publish/subscribe channel for ProgressEvents."""

    def __init__(self, *, log_events: bool = True) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._log_events = log_events

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Register `fn`; returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(fn)
        return lambda: self.unsubscribe(fn)

    def unsubscribe(self, fn: Subscriber) -> None:
        with self._lock:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(event)
            except Exception:
                LOG.exception("Progress subscriber %r failed for job %s", fn, event.job_id)
        if self._log_events:
            logging_bridge.progress({"component": "data_quality.events", "op": "progress", **event.to_dict()})


class ProgressTracker:
    """
    Consumer-side view of job progress, usable as a ProgressBus subscriber.

    Each event REPLACES the stored snapshot for its job (counters are never
    summed from events), and an event older than the stored one (lower
    checkpoint sequence) is dropped, so redelivery and reordering are harmless.
    The execution count shown is always the one carried in the latest event,
    which comes from the persisted job record.
    """

    def __init__(self) -> None:
        self._latest: dict[str, ProgressEvent] = {}
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        self.apply(event)

    def apply(self, event: ProgressEvent) -> bool:
        """Store `event` unless it is stale; returns True when it was applied."""
        with self._lock:
            current = self._latest.get(event.job_id)
            if current is not None and event.checkpoint_seq < current.checkpoint_seq:
                return False
            self._latest[event.job_id] = event
            return True

    def get(self, job_id: str) -> ProgressEvent | None:
        with self._lock:
            return self._latest.get(job_id)

    def snapshot(self) -> dict[str, ProgressEvent]:
        with self._lock:
            return dict(self._latest)
