"""
Multi-cursor orchestrator: one bounded unit of work per invocation.

Each invocation loads a job and its cursors, then loops:
  fetch a batch from the active cursors -> evaluate -> persist findings ->
  checkpoint (cursors first, then the job) -> publish progress
until every cursor is exhausted, a pause is requested, or the compute budget
says to yield. Yielding is not failure: the job stays Running and the caller
(the chain scheduler) queues the next invocation.

Checkpoints carry a sequence number. Cursors are written at seq+1 before the
job record moves to seq+1, so a cursor found ahead of its job on load means
the previous invocation died between the two writes; the cursor is moved back
to the job's processed count and the overlapping batch is simply re-read.
Findings are deduplicated on insert and the job's counters are recounted from
the result store, so the re-read changes nothing.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from . import logging_bridge, results_db
from .batch_sizer import AdaptiveBatchSizer
from .budget import ComputeBudget
from .config import Settings
from .cursor import Cursor, RecordSource
from .cursor_store import CursorStore
from .errors import (
    EVALUATION_ERROR,
    CheckpointError,
    DatasetUnavailable,
    JobBusy,
    JobExpired,
    JobNotActionable,
    JobNotFound,
    StateExpired,
    StateNotFound,
    StoreUnavailable,
)
from .evaluators.base import BaseEvaluator, EvaluationContext
from .events import ProgressBus, ProgressEvent
from .models import Duplicate, Issue, Job, JobStatus, ProcessingMode, Severity
from .plans import build_plan
from .utils import now_iso

LOG = logging.getLogger(__name__)

# Failures that end the invocation and move the job to Error.
INFRASTRUCTURE_ERRORS = (DatasetUnavailable, StoreUnavailable, sqlite3.Error)


@dataclass(frozen=True)
class InvocationResult:
    job_id: str
    status: JobStatus
    needs_continuation: bool
    iterations: int = 0
    records_fetched: int = 0
    batch_size: int = 0
    error_message: str | None = None


def _default_get_evaluator(kind: str) -> type[BaseEvaluator]:
    from .evaluators.registry import get as get_evaluator_class

    return get_evaluator_class(kind)


class MultiCursorOrchestrator:
    def __init__(
        self,
        settings: Settings,
        store: CursorStore,
        source: RecordSource,
        bus: ProgressBus | None = None,
        *,
        budget_factory: Callable[[], ComputeBudget] | None = None,
        get_evaluator: Callable[[str], type[BaseEvaluator]] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.source = source
        self.bus = bus or ProgressBus()
        self.sizer = AdaptiveBatchSizer(settings.min_batch, settings.max_batch)
        self._budget_factory = budget_factory or self._default_budget
        self._get_evaluator = get_evaluator or _default_get_evaluator
        # Outlives the slowest invocation the budget allows.
        self.lease_seconds = max(60.0, 2 * settings.max_seconds_per_invocation)

    def _default_budget(self) -> ComputeBudget:
        return ComputeBudget(
            max_rows=self.settings.max_rows_per_invocation,
            max_seconds=self.settings.max_seconds_per_invocation,
            yield_fraction=self.settings.yield_fraction,
        )

    # ---- Job lifecycle ------------------------------------------------------

    def create_job(self, mode: ProcessingMode | str, now: datetime | None = None) -> Job:
        """
        Plan the job, open one cursor per dataset (snapshotting totals) and
        persist everything as Queued. Nothing is fetched yet.

        Raises:
            DatasetUnavailable: a dataset could not be counted.
            ValueError: unknown mode or evaluator kind.
        """
        plan = build_plan(mode, self.settings, now)
        for kind in plan.evaluator_kinds:
            try:
                self._get_evaluator(kind)
            except KeyError as e:
                raise ValueError(f"Mode {plan.mode.value} uses unknown evaluator {kind!r}") from e

        job_id = uuid.uuid4().hex
        cursors = [Cursor.create(self.source, job_id, spec, plan.direction) for spec in plan.specs]
        job = Job(
            job_id=job_id,
            mode=plan.mode,
            datasets=plan.datasets,
            totals={c.dataset: c.total for c in cursors},
            processed={c.dataset: 0 for c in cursors},
            batch_size=self.settings.initial_batch,
            sequential=plan.sequential,
            evaluators=list(plan.evaluator_kinds),
        )

        self.store.put_many(job_id, {c.dataset: c.serialize() for c in cursors})
        self._save_job(job)

        logging_bridge.activity({
            "component": "data_quality.orchestrator",
            "op": "job_created",
            "job_id": job_id,
            "mode": plan.mode.value,
            "direction": plan.direction.value,
            "sequential": plan.sequential,
            "evaluators": plan.evaluator_kinds,
            "totals": job.totals,
        })
        return job

    def load_job(self, job_id: str) -> Job:
        """
        Current job record from the cursor store.

        Raises:
            JobExpired: the record (or its purged remains) is past the TTL.
            JobNotFound: the id was never seen.
        """
        try:
            return Job.from_dict(self.store.get_job(job_id))
        except StateExpired as e:
            raise JobExpired(f"job {job_id} expired; its cursor state is past the retention window") from e
        except StateNotFound as e:
            history = results_db.get_job(self.settings.results_path, job_id)
            if history is None:
                raise JobNotFound(f"job {job_id} not found") from e
            if history.status.terminal:
                return history
            raise JobExpired(f"job {job_id} expired; its cursor state was purged") from e

    def job_status(self, job_id: str) -> Job:
        """Latest durable snapshot (survives cursor-store expiry)."""
        job = results_db.get_job(self.settings.results_path, job_id)
        if job is None:
            raise JobNotFound(f"job {job_id} not found")
        return job

    def pause_now(self, job_id: str) -> Job:
        """
        Mark an idle job Paused without touching its cursors. If an invocation
        holds the lease, the job is returned unchanged; that invocation stops
        at its next iteration boundary once it sees the pause flag.
        """
        job = self.load_job(job_id)
        if job.status.terminal:
            raise JobNotActionable(f"job {job_id} is {job.status.value}")
        owner = uuid.uuid4().hex
        if not self.store.acquire_lease(job_id, owner, self.lease_seconds):
            LOG.info("Job %s is running elsewhere; pause left to its next iteration boundary", job_id)
            return job
        try:
            job = self.load_job(job_id)
            if not job.status.terminal and job.status is not JobStatus.PAUSED:
                job.status = JobStatus.PAUSED
                self._save_job(job)
        finally:
            self.store.release_lease(job_id, owner)
        return job

    def require_cursor_state(self, job: Job) -> None:
        """
        Raises:
            JobExpired: a cursor of the job is missing or past its TTL, even
                if the job record itself was refreshed more recently.
        """
        for dataset in job.datasets:
            try:
                self.store.get(job.job_id, dataset)
            except StateNotFound as e:
                raise JobExpired(f"cursor state for job {job.job_id}/{dataset} is past the retention window") from e

    # ---- Invocation ---------------------------------------------------------

    def run_invocation(self, job_id: str) -> InvocationResult:
        """
        Run one bounded unit of work for `job_id` under the job's lease.

        Raises:
            JobBusy: another invocation holds the lease.
            JobExpired / JobNotFound: the job cannot be loaded.
            JobNotActionable: the job is Completed or Error.
        Infrastructure failures do not raise: the job moves to Error and the
        result says so.
        """
        owner = uuid.uuid4().hex
        if not self.store.acquire_lease(job_id, owner, self.lease_seconds):
            raise JobBusy(f"job {job_id} is being run by another invocation")
        try:
            return self._run_leased(job_id)
        finally:
            self.store.release_lease(job_id, owner)

    def _run_leased(self, job_id: str) -> InvocationResult:
        t0 = time.perf_counter_ns()
        job = self.load_job(job_id)
        if job.status.terminal:
            raise JobNotActionable(f"job {job_id} is {job.status.value}")

        last_saved = Job.from_dict(job.to_dict())
        iterations = 0
        fetched = 0
        needs_continuation = False

        try:
            if self.store.is_pause_requested(job_id):
                if job.status is not JobStatus.PAUSED:
                    job.status = JobStatus.PAUSED
                    self._save_job(job)
                return InvocationResult(job_id, job.status, False, batch_size=job.batch_size)

            cursors = self._load_cursors(job)
            evaluators = [self._get_evaluator(kind)() for kind in job.evaluators]
            ctx = EvaluationContext(job_id=job_id, results_path=self.settings.results_path, settings=self.settings)
            budget = self._budget_factory()

            job.status = JobStatus.RUNNING
            job.error_message = None

            while True:
                size = 0
                active = [c for c in cursors if not c.exhausted]
                if job.sequential:
                    active = active[:1]
                if active:
                    size = min(job.batch_size, budget.row_allowance(len(active)))
                    if size >= 1:
                        fetched += self._run_iteration(job, active, size, evaluators, ctx, budget)
                        iterations += 1

                if all(c.exhausted for c in cursors):
                    job.status = JobStatus.COMPLETED
                elif self.store.is_pause_requested(job_id):
                    job.status = JobStatus.PAUSED
                elif size < 1 or budget.exhausted():
                    job.execution_count += 1
                    needs_continuation = True

                self._checkpoint(job, cursors)
                last_saved = Job.from_dict(job.to_dict())

                if needs_continuation or job.status is not JobStatus.RUNNING:
                    break

        except INFRASTRUCTURE_ERRORS as e:
            return self._fail(last_saved, e, iterations, fetched)

        logging_bridge.activity({
            "component": "data_quality.orchestrator",
            "op": "invocation",
            "job_id": job_id,
            "status": job.status.value,
            "needs_continuation": needs_continuation,
            "iterations": iterations,
            "records_fetched": fetched,
            "batch_size": job.batch_size,
            "execution_count": job.execution_count,
            "processed": job.processed,
            "duration_ms": int((time.perf_counter_ns() - t0) // 1_000_000),
        })
        return InvocationResult(
            job_id=job_id,
            status=job.status,
            needs_continuation=needs_continuation,
            iterations=iterations,
            records_fetched=fetched,
            batch_size=job.batch_size,
        )

    # ---- Internals ----------------------------------------------------------

    def _load_cursors(self, job: Job) -> list[Cursor]:
        cursors: list[Cursor] = []
        for dataset in job.datasets:
            try:
                cursor = Cursor.deserialize(self.store.get(job.job_id, dataset))
            except StateNotFound as e:
                raise JobExpired(f"cursor state for job {job.job_id}/{dataset} is gone") from e
            except ValueError as e:
                raise CheckpointError(f"cursor state for job {job.job_id}/{dataset} is unreadable: {e}") from e

            if cursor.checkpoint != job.checkpoint_seq:
                # Died between the cursor write and the job write: rewind to what the job recorded.
                processed = job.processed.get(dataset, 0)
                LOG.warning(
                    "Cursor %s/%s at checkpoint %d but job at %d; realigning to %d processed",
                    job.job_id,
                    dataset,
                    cursor.checkpoint,
                    job.checkpoint_seq,
                    processed,
                )
                cursor.seek(cursor.position_for_consumed(processed))
                cursor.checkpoint = job.checkpoint_seq
            cursors.append(cursor)
        return cursors

    def _run_iteration(
        self,
        job: Job,
        active: list[Cursor],
        size: int,
        evaluators: list[BaseEvaluator],
        ctx: EvaluationContext,
        budget: ComputeBudget,
    ) -> int:
        issues: list[Issue] = []
        duplicates: list[Duplicate] = []
        scores: list[float] = []
        fetched = 0
        skipped = 0

        for cursor in active:
            records, _position = cursor.fetch(self.source, size)
            fetched += len(records)
            job.processed[cursor.dataset] = cursor.consumed
            for record in records:
                record_id = record.get("id")
                if record_id in (None, ""):
                    skipped += 1
                    continue
                score = self._evaluate(ctx, evaluators, cursor.dataset, str(record_id), record, issues, duplicates)
                if score is not None:
                    scores.append(score)
        budget.record_fetch(fetched)
        if skipped:
            LOG.warning("Job %s: skipped %d record(s) without id", job.job_id, skipped)

        results_db.insert_issues(self.settings.results_path, issues)
        results_db.insert_duplicates(self.settings.results_path, duplicates)

        if scores:
            batch_avg = sum(scores) / len(scores)
            n = len(scores)
            old = job.average_quality_score
            job.average_quality_score = old + (batch_avg - old) * n / (job.scored_records + n)
            job.scored_records += n
        job.issues_found = results_db.count_issues(self.settings.results_path, job.job_id)
        job.duplicates_found = results_db.count_duplicates(self.settings.results_path, job.job_id)

        budget.complete_iteration()
        job.batch_size = self.sizer.next_batch_size(job.batch_size, budget.used_fraction())
        return fetched

    def _evaluate(
        self,
        ctx: EvaluationContext,
        evaluators: list[BaseEvaluator],
        dataset: str,
        record_id: str,
        record: dict,
        issues: list[Issue],
        duplicates: list[Duplicate],
    ) -> float | None:
        """Run every evaluator on one record; returns its score, or None if unscored."""
        scores: list[float] = []
        failed = False
        for evaluator in evaluators:
            try:
                result = evaluator.evaluate(ctx, dataset, record)
            except INFRASTRUCTURE_ERRORS:
                raise
            except Exception as e:
                failed = True
                issues.append(
                    Issue(
                        job_id=ctx.job_id,
                        object_type=dataset,
                        record_id=record_id,
                        issue_type=EVALUATION_ERROR,
                        severity=Severity.HIGH.value,
                        description=f"{evaluator.kind} failed: {e!r}",
                        field=evaluator.kind,
                    )
                )
                logging_bridge.error({
                    "component": "data_quality.orchestrator",
                    "op": "evaluate",
                    "job_id": ctx.job_id,
                    "dataset": dataset,
                    "record_id": record_id,
                    "evaluator": evaluator.kind,
                    "error": repr(e),
                })
                continue

            if result.score is not None:
                scores.append(float(result.score))
            for f in result.issues:
                issues.append(
                    Issue(
                        job_id=ctx.job_id,
                        object_type=dataset,
                        record_id=record_id,
                        issue_type=f.issue_type,
                        severity=f.severity,
                        description=f.description,
                        field=f.field,
                    )
                )
            for d in result.duplicates:
                duplicates.append(
                    Duplicate(
                        job_id=ctx.job_id,
                        object_type=dataset,
                        record_1_id=d.record_1_id,
                        record_2_id=d.record_2_id,
                        match_score=d.match_score,
                    )
                )

        if failed or not scores:
            return None
        return sum(scores) / len(scores)

    def _checkpoint(self, job: Job, cursors: list[Cursor]) -> None:
        """Cursor states first, in one transaction; the job record only after they land."""
        seq = job.checkpoint_seq + 1
        for cursor in cursors:
            cursor.checkpoint = seq
        try:
            self.store.put_many(job.job_id, {c.dataset: c.serialize() for c in cursors})
        except StoreUnavailable as e:
            raise CheckpointError(f"checkpoint {seq} for job {job.job_id} failed: {e}") from e
        job.checkpoint_seq = seq
        self._save_job(job)

    def _save_job(self, job: Job) -> None:
        job.updated_at = now_iso()
        self.store.put_job(job.job_id, job.to_dict())
        results_db.upsert_job(self.settings.results_path, job)
        self.bus.publish(ProgressEvent.from_job(job))

    def _fail(self, job: Job, exc: BaseException, iterations: int, fetched: int) -> InvocationResult:
        job.status = JobStatus.ERROR
        job.error_message = f"{type(exc).__name__}: {exc}"
        job.updated_at = now_iso()
        logging_bridge.error({
            "component": "data_quality.orchestrator",
            "op": "invocation",
            "job_id": job.job_id,
            "checkpoint_seq": job.checkpoint_seq,
            "error": repr(exc),
        })
        try:
            self.store.put_job(job.job_id, job.to_dict())
        except StoreUnavailable:
            LOG.exception("Could not record Error status for job %s in the cursor store", job.job_id)
        try:
            results_db.upsert_job(self.settings.results_path, job)
        except sqlite3.Error:
            LOG.exception("Could not record Error status for job %s in job history", job.job_id)
        self.bus.publish(ProgressEvent.from_job(job))
        return InvocationResult(
            job_id=job.job_id,
            status=job.status,
            needs_continuation=False,
            iterations=iterations,
            records_fetched=fetched,
            batch_size=job.batch_size,
            error_message=job.error_message,
        )
