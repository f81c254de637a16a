# dqservice/scheduler.py
from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dqmodules.data_quality.lib import logging_bridge
from dqmodules.data_quality.lib.cursor_store import CursorStore
from dqmodules.data_quality.lib.errors import JobBusy, JobExpired, JobNotActionable, JobNotFound, StateNotFound
from dqmodules.data_quality.lib.models import JobStatus
from dqmodules.data_quality.lib.orchestrator import InvocationResult

from . import config_schema, runner

LOG = logging.getLogger(__name__)

CHAIN_PREFIX = "chain:"
HOUSEKEEPING_JOB_ID = "housekeeping:purge_expired"
SWEEP_JOB_ID = "housekeeping:recover"


def chain_job_id(job_id: str) -> str:
    return f"{CHAIN_PREFIX}{job_id}"


# ---- Chain scheduler --------------------------------------------------------


class ChainScheduler:
    """
    Queues one-shot continuation invocations on an APScheduler instance.

    At most one pending and one active invocation exist per job. The pending
    and active sets below cover this process; the cursor store's job lease
    covers every process sharing it. A job that is terminal, missing, expired,
    paused or leased elsewhere is never queued.

    Works with a running scheduler (the service) or a stopped one, in which
    case drain() executes the queued links inline (foreground CLI runs, tests).
    """

    def __init__(
        self,
        scheduler: BaseScheduler,
        invoke: Callable[[str], InvocationResult],
        store: CursorStore,
        delay_seconds: float = 0.0,
    ) -> None:
        self._scheduler = scheduler
        self._invoke = invoke
        self._store = store
        self._delay = max(0.0, float(delay_seconds))
        self._lock = threading.Lock()
        self._pending: set[str] = set()
        self._active: set[str] = set()

    # ---- Public API ----

    def schedule_continuation(self, job_id: str, trigger_type: str = "chain") -> bool:
        """
        Queue the next invocation for `job_id`.
        Returns False (and does nothing) when the job is already pending or
        active, or is not eligible to run.
        """
        if not self._eligible(job_id):
            return False

        with self._lock:
            if job_id in self._pending or job_id in self._active:
                LOG.debug("Job %s already has a pending or active invocation", job_id)
                return False
            self._pending.add(job_id)

        tz = self._scheduler.timezone
        run_at = datetime.now(tz) + timedelta(seconds=self._delay)
        try:
            self._scheduler.add_job(
                func=self._run,
                trigger=DateTrigger(run_date=run_at, timezone=tz),
                args=[job_id, trigger_type],
                id=chain_job_id(job_id),
                max_instances=1,
                coalesce=True,
                misfire_grace_time=None,
                replace_existing=False,
            )
        except ConflictingIdError:
            LOG.debug("Continuation for job %s already queued", job_id)
            return False
        except Exception:
            with self._lock:
                self._pending.discard(job_id)
            raise

        LOG.info("Queued %s invocation for job %s at %s", trigger_type, job_id, run_at.isoformat())
        return True

    def is_busy(self, job_id: str) -> bool:
        """True while an invocation for the job is queued here or running in any process."""
        with self._lock:
            if job_id in self._pending or job_id in self._active:
                return True
        return self._store.lease_holder(job_id) is not None

    def pending_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def drain(self, max_runs: int = 100_000) -> int:
        """
        Run queued continuation links inline until none remain (or max_runs).
        Only meaningful on a scheduler that has not been started.
        """
        if self._scheduler.running:
            raise RuntimeError("drain() needs a stopped scheduler; a running one executes links itself")
        runs = 0
        while runs < max_runs:
            queued = [j for j in self._scheduler.get_jobs() if j.id.startswith(CHAIN_PREFIX)]
            if not queued:
                break
            link = queued[0]
            self._scheduler.remove_job(link.id)
            link.func(*link.args, **link.kwargs)
            runs += 1
        return runs

    def recover(self) -> list[str]:
        """Re-link every Queued/Running job in the store that has nothing queued."""
        linked: list[str] = []
        runnable = {JobStatus.QUEUED.value, JobStatus.RUNNING.value}
        for record in self._store.list_jobs():
            job_id = str(record.get("job_id") or "")
            if job_id and record.get("status") in runnable and self.schedule_continuation(job_id, "recover"):
                linked.append(job_id)
        if linked:
            LOG.info("Recovered %d job(s): %s", len(linked), ", ".join(linked))
        return linked

    # ---- Internals ----

    def _eligible(self, job_id: str) -> bool:
        try:
            record = self._store.get_job(job_id)
        except StateNotFound:
            LOG.info("Not scheduling job %s: no live job record", job_id)
            return False
        status = JobStatus(record.get("status", JobStatus.QUEUED.value))
        if status.terminal:
            LOG.info("Not scheduling job %s: status %s", job_id, status.value)
            return False
        if self._store.is_pause_requested(job_id):
            LOG.info("Not scheduling job %s: pause requested", job_id)
            return False
        if self._store.lease_holder(job_id) is not None:
            LOG.info("Not scheduling job %s: an invocation holds its lease", job_id)
            return False
        return True

    def _run(self, job_id: str, trigger_type: str = "chain") -> InvocationResult | None:
        with self._lock:
            self._pending.discard(job_id)
            if job_id in self._active:
                LOG.warning("Job %s already has an active invocation; dropping duplicate link", job_id)
                return None
            self._active.add(job_id)

        result: InvocationResult | None = None
        try:
            result = runner.run_invocation_once(self._invoke, job_id, trigger_type=trigger_type)
        except (JobBusy, JobExpired, JobNotFound, JobNotActionable) as e:
            LOG.warning("Invocation for job %s not run: %s", job_id, e)
            logging_bridge.error({
                "component": "dqservice.scheduler",
                "op": "invocation",
                "job_id": job_id,
                "error": repr(e),
            })
        except Exception:
            LOG.exception("Invocation for job %s raised an exception.", job_id)
        finally:
            with self._lock:
                self._active.discard(job_id)

        if result is None:
            return None
        if result.needs_continuation:
            self.schedule_continuation(job_id)
        elif result.status is JobStatus.PAUSED and not self._store.is_pause_requested(job_id):
            # Resumed while this invocation was still running.
            self.schedule_continuation(job_id, "resume")
        return result


# ---- Scheduler construction -------------------------------------------------


class SchedulerController:
    """
    A small façade around APScheduler so the CLI can manage lifecycle cleanly.
    """

    def __init__(self, scheduler: BaseScheduler) -> None:
        self._scheduler = scheduler
        self._stopped_evt = threading.Event()

    def stop(self) -> None:
        if self._scheduler.running:
            LOG.info("Shutting down scheduler...")
            # In-flight invocations finish; they checkpoint before returning.
            self._scheduler.shutdown(wait=False)
        self._stopped_evt.set()
        LOG.info("Scheduler shut down complete.")

    def join(self, timeout: float | None = None) -> bool:
        """Block until stop() (or timeout). True if stopped before timeout."""
        return self._stopped_evt.wait(timeout=timeout)


def build_scheduler(cfg: dict[str, Any]) -> BackgroundScheduler:
    """
    A configured but NOT started BackgroundScheduler.

    APScheduler 3.x prefers a pytz scheduler timezone, so that is what we hand it.
    """
    return BackgroundScheduler(
        timezone=_resolve_timezone(cfg),
        job_defaults={"coalesce": True, "max_instances": 1},
        executors={"default": ThreadPoolExecutor(_int_or(cfg.get("executor_workers"), 10))},
        jobstores={"default": MemoryJobStore()},
    )


def add_maintenance_jobs(
    scheduler: BaseScheduler,
    cfg: dict[str, Any],
    chain: ChainScheduler,
    store: CursorStore,
) -> None:
    """Register the expiry purge and the recovery sweep, each on its configured trigger."""
    tz = scheduler.timezone
    for job_id, key, func in (
        (HOUSEKEEPING_JOB_ID, "housekeeping", store.purge_expired),
        (SWEEP_JOB_ID, "sweep", chain.recover),
    ):
        trig_def = cfg.get(key)
        if not trig_def:
            LOG.info("%s disabled", key)
            continue
        scheduler.add_job(
            func=_logged(job_id, func),
            trigger=_build_trigger(trig_def, tz),
            id=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        LOG.info("Registered %s (%s)", job_id, trig_def)


def start(config_path: str | None = None) -> tuple[SchedulerController, Any]:
    """
    Load configuration, wire the controller onto a BackgroundScheduler, add
    the maintenance jobs, re-link unfinished jobs and start.

    Returns:
        (SchedulerController, DataQualityController)
    """
    from .controller import DataQualityController

    cfg = config_schema.load_config(config_path)
    config_schema.validate(cfg)
    scheduler = build_scheduler(cfg)
    controller = DataQualityController.from_config(cfg, scheduler=scheduler)

    add_maintenance_jobs(scheduler, cfg, controller.chain, controller.store)
    controller.chain.recover()

    scheduler.start()
    LOG.info("Scheduler started with %d job(s).", len(scheduler.get_jobs()))
    return SchedulerController(scheduler), controller


# ---- Helpers ----------------------------------------------------------------


def _logged(job_id: str, func: Callable[[], Any]) -> Callable[[], None]:
    def _wrapper() -> None:
        try:
            result = func()
        except Exception:
            LOG.exception("Job[%s] raised an exception.", job_id)
            return
        LOG.debug("Job[%s] finished: %r", job_id, result)

    return _wrapper


def _resolve_timezone(cfg: dict[str, Any]):
    """config['timezone'], then env TZ, then UTC; unknown names fall back to UTC."""
    import pytz

    tz_name = cfg.get("timezone") or os.getenv("TZ") or "UTC"
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        LOG.warning("Falling back to UTC timezone (invalid or missing tz '%s')", tz_name)
        return pytz.UTC


def _build_trigger(trig_def: dict[str, Any], tz) -> Any:
    """
    Build an APScheduler trigger for the maintenance jobs.

    Supported shapes:
      {"interval": {weeks|days|hours|minutes|seconds, jitter?}}
      {"cron":     {second?, minute?, hour?, day?, day_of_week?, month?}}
      {"cron":     "*/15 * * * *"}
    """
    if not isinstance(trig_def, dict):
        raise ValueError("trigger spec must be a dict")
    present = [k for k in ("interval", "cron") if trig_def.get(k) is not None]
    if len(present) != 1:
        raise ValueError("exactly one of {'interval','cron'} must be provided")

    if present[0] == "interval":
        spec = trig_def["interval"]
        if not isinstance(spec, dict):
            raise ValueError("interval must be an object with time fields")
        allowed = {"weeks", "days", "hours", "minutes", "seconds", "jitter"}
        unknown = set(spec) - allowed
        if unknown:
            raise ValueError(f"interval has unknown field(s): {sorted(unknown)}")
        kwargs: dict[str, int] = {}
        for name in sorted(allowed):
            if name not in spec:
                continue
            try:
                value = int(spec[name])
            except (TypeError, ValueError) as err:
                raise ValueError(f"interval.{name} must be an integer") from err
            if value < 0:
                raise ValueError(f"interval.{name} must be >= 0")
            if value:
                kwargs[name] = value
        if not any(v for k, v in kwargs.items() if k != "jitter"):
            raise ValueError("interval must be greater than 0 (provide at least one nonzero time field)")
        return IntervalTrigger(timezone=tz, **kwargs)

    cron_spec = trig_def["cron"]
    if isinstance(cron_spec, str):
        if len(cron_spec.split()) != 5:
            raise ValueError(f"cron string must have 5 fields: {cron_spec!r}")
        return CronTrigger.from_crontab(cron_spec, timezone=tz)
    if isinstance(cron_spec, dict):
        allowed = {"second", "minute", "hour", "day", "day_of_week", "month"}
        unknown = set(cron_spec) - allowed
        if unknown:
            raise ValueError(f"cron has unknown field(s): {sorted(unknown)}")
        return CronTrigger(
            second=cron_spec.get("second", 0),
            minute=cron_spec.get("minute", 0),
            hour=cron_spec.get("hour"),
            day=cron_spec.get("day"),
            day_of_week=cron_spec.get("day_of_week"),
            month=cron_spec.get("month"),
            timezone=tz,
        )
    raise ValueError("cron must be a crontab string or an object")


def _int_or(v: Any, default: int) -> int:
    """Return int(v) or default if v is None/invalid (lenient for config)."""
    try:
        return int(v) if v is not None else default
    except (TypeError, ValueError):
        return default
