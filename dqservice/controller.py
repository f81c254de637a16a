# dqservice/controller.py
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

from dqmodules.data_quality.lib import logging_bridge, results_db
from dqmodules.data_quality.lib.budget import ComputeBudget
from dqmodules.data_quality.lib.config import Settings
from dqmodules.data_quality.lib.cursor import RecordSource
from dqmodules.data_quality.lib.cursor_store import CursorStore
from dqmodules.data_quality.lib.errors import JobNotActionable, OutOfRange
from dqmodules.data_quality.lib.events import ProgressBus
from dqmodules.data_quality.lib.models import Job, ProcessingMode
from dqmodules.data_quality.lib.orchestrator import InvocationResult, MultiCursorOrchestrator
from dqmodules.data_quality.lib.pagination import PageResult, PaginationService
from dqmodules.data_quality.lib.sources import SqliteRecordSource

from . import config_schema
from .scheduler import ChainScheduler

LOG = logging.getLogger(__name__)

ISSUES = "issues"
DUPLICATES = "duplicates"
JOBS = "jobs"

# Accepted spellings for jump_to_page's object type.
_OBJECT_TYPES = {
    "issues": ISSUES,
    "issue": ISSUES,
    "data_quality_issue": ISSUES,
    "duplicates": DUPLICATES,
    "duplicate": DUPLICATES,
    "duplicate_record": DUPLICATES,
    "jobs": JOBS,
    "job": JOBS,
    "job_history": JOBS,
}


class DataQualityController:
    """
    The operations a dashboard (or the CLI) calls.

    Wires the cursor store, record source, result store, orchestrator, chain
    scheduler and pagination together. Without an explicit scheduler it uses
    a BackgroundScheduler that is never started, so continuations only run
    when drain() is called (foreground CLI runs and tests).
    """

    def __init__(
        self,
        settings: Settings,
        *,
        source: RecordSource | None = None,
        scheduler: BaseScheduler | None = None,
        bus: ProgressBus | None = None,
        budget_factory: Callable[[], ComputeBudget] | None = None,
    ) -> None:
        self.settings = settings
        self.store = CursorStore(settings.cursor_store_path, ttl_seconds=settings.ttl_seconds)
        if source is None:
            records = SqliteRecordSource(settings.records_path)
            records.init_db()
            source = records
        self.source = source
        results_db.init_db(settings.results_path)
        self.bus = bus or ProgressBus()
        self.orchestrator = MultiCursorOrchestrator(
            settings, self.store, self.source, self.bus, budget_factory=budget_factory
        )
        self.scheduler = scheduler if scheduler is not None else BackgroundScheduler(timezone="UTC")
        self.chain = ChainScheduler(
            self.scheduler,
            self.orchestrator.run_invocation,
            self.store,
            delay_seconds=settings.continuation_delay_seconds,
        )
        self.pages = PaginationService(results_db.ResultsSource(settings.results_path))

    @classmethod
    def from_config(cls, cfg: dict[str, Any], **kwargs: Any) -> DataQualityController:
        return cls(config_schema.engine_settings(cfg), **kwargs)

    # ---- Job operations -------------------------------------------------------

    def start_job(self, mode: ProcessingMode | str) -> str:
        """Create the job and its cursors, then queue the first invocation."""
        job = self.orchestrator.create_job(mode)
        self.chain.schedule_continuation(job.job_id, "start")
        logging_bridge.activity({
            "component": "dqservice.controller",
            "op": "start_job",
            "job_id": job.job_id,
            "mode": job.mode.value,
        })
        return job.job_id

    def resume_job(self, job_id: str) -> bool:
        """
        Clear any pause request and queue the next invocation.

        Returns True when a new invocation was queued (False if one already was).

        Raises:
            JobExpired: cursor state is past the retention window.
            JobNotFound: unknown id.
            JobNotActionable: the job is Completed or Error.
        """
        job = self.orchestrator.load_job(job_id)
        if job.status.terminal:
            raise JobNotActionable(f"job {job_id} is {job.status.value}")
        # Pausing refreshes only the job record; the cursors keep their own TTL.
        self.orchestrator.require_cursor_state(job)
        self.store.clear_pause(job_id)
        queued = self.chain.schedule_continuation(job_id, "resume")
        logging_bridge.activity({
            "component": "dqservice.controller",
            "op": "resume_job",
            "job_id": job_id,
            "status": job.status.value,
            "queued": queued,
        })
        return queued

    def pause_job(self, job_id: str) -> Job:
        """
        Request a pause. A running job stops at its next iteration boundary;
        an idle one is marked Paused straight away.
        """
        job = self.orchestrator.load_job(job_id)
        if job.status.terminal:
            raise JobNotActionable(f"job {job_id} is {job.status.value}")
        self.store.request_pause(job_id)
        # Nothing can be queued once the flag is set, so an idle job stays idle.
        if not self.chain.is_busy(job_id):
            job = self.orchestrator.pause_now(job_id)
        logging_bridge.activity({
            "component": "dqservice.controller",
            "op": "pause_job",
            "job_id": job_id,
            "status": job.status.value,
        })
        return job

    def run_pending(self, max_runs: int = 100_000) -> int:
        """Execute queued invocations inline (stopped scheduler only)."""
        return self.chain.drain(max_runs)

    def run_invocation(self, job_id: str) -> InvocationResult:
        return self.orchestrator.run_invocation(job_id)

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        job = self.orchestrator.job_status(job_id)
        out = job.to_dict()
        out["total_records"] = job.total_records
        out["processed_records"] = job.processed_records
        return out

    def get_dashboard_stats(self) -> dict[str, Any]:
        return results_db.dashboard_stats(self.settings.results_path)

    # ---- Paged lists ----------------------------------------------------------

    def get_data_quality_issues(
        self, page_size: int = 50, cursor_state: str | None = None, direction: str = "first"
    ) -> PageResult:
        return self.pages.page(ISSUES, page_size, cursor_state, direction)

    def get_duplicate_records(
        self, page_size: int = 50, cursor_state: str | None = None, direction: str = "first"
    ) -> PageResult:
        return self.pages.page(DUPLICATES, page_size, cursor_state, direction)

    def get_job_history(
        self, page_size: int = 20, cursor_state: str | None = None, direction: str = "first"
    ) -> PageResult:
        return self.pages.page(JOBS, page_size, cursor_state, direction)

    def jump_to_page(self, object_type: str, page_number: int, page_size: int = 50) -> PageResult:
        dataset = _OBJECT_TYPES.get(str(object_type or "").strip().lower())
        if dataset is None:
            raise OutOfRange(f"unknown object type {object_type!r}")
        return self.pages.jump_to_page(dataset, page_number, page_size)

    # ---- Record actions -------------------------------------------------------

    def resolve_issue(self, issue_id: int, resolution: str = "") -> dict[str, Any]:
        return results_db.resolve_issue(self.settings.results_path, issue_id, resolution)

    def mark_duplicate_merged(self, duplicate_id: int) -> dict[str, Any]:
        return results_db.mark_duplicate_merged(self.settings.results_path, duplicate_id)

    # ---- Maintenance ----------------------------------------------------------

    def purge_expired(self) -> int:
        return self.store.purge_expired()
