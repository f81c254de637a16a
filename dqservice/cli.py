# dqservice/cli.py
"""
Command-line entrypoints for the data-quality engine.

Subcommands
-----------
serve
    - Starts the APScheduler service loop via dqservice.scheduler.start()
    - Re-links unfinished jobs, runs the expiry purge and recovery sweep
    - Registers signal handlers for graceful shutdown

start MODE [--foreground]
    - Creates a job; with --foreground runs every invocation in this process,
      otherwise leaves it Queued for a running `serve` to pick up

resume JOB [--foreground] / pause JOB / status JOB / stats
    - Job control and dashboard numbers (JSON on stdout)

page TYPE [--page-size N] [--token T] [--direction D] [--page N]
    - One page of issues, duplicates or jobs

resolve ISSUE [--resolution TEXT] / merge DUPLICATE
    - Record actions

load DATASET FILE
    - Streams a JSON array (or concatenated JSON objects) into the record store

purge-expired / validate-config
    - Maintenance

Exit codes: 0 ok, 1 failure, 2 bad request or not found, 130 interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sqlite3
import sys
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from types import SimpleNamespace
from typing import Any

import ijson

from dqmodules.data_quality.lib.errors import DataQualityError, JobNotFound, OutOfRange, RecordNotFound
from dqmodules.data_quality.lib.models import ProcessingMode
from dqmodules.data_quality.lib.sources import SqliteRecordSource, iter_json_records
from dqservice import config_schema as _config_schema
from dqservice import logging_utils as L
from dqservice import scheduler as _scheduler
from dqservice.controller import DataQualityController

LOG = logging.getLogger("dqservice.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

_USAGE_ERRORS = (OutOfRange, JobNotFound, RecordNotFound)


# ----------------------------- Logging setup ---------------------------------
def _ensure_logging() -> None:
    """Initialize a reasonable logging setup if none exists yet."""
    root = logging.getLogger()
    if not root.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


# -------------------------- Utility / glue code ------------------------------
def _now_iso() -> str:
    return datetime.now().astimezone().isoformat()


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


def _controller(args: argparse.Namespace) -> DataQualityController:
    cfg = _config_schema.load_config(args.config)
    return DataQualityController.from_config(cfg)


def _guarded(where: str, fn: Callable[[argparse.Namespace], int]) -> Callable[[argparse.Namespace], int]:
    """Map exceptions to exit codes and write an error record for failures."""

    def _wrapper(args: argparse.Namespace) -> int:
        started = time.monotonic()
        try:
            return fn(args)
        except KeyboardInterrupt:
            return EXIT_INTERRUPTED
        except _USAGE_ERRORS as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return EXIT_USAGE
        except (DataQualityError, OSError, ValueError, sqlite3.Error, ijson.JSONError) as e:
            LOG.exception("%s failed: %s", where, e)
            print(f"FAILURE: {e}", file=sys.stderr)
            L.write_error_log({
                "ts": _now_iso(),
                "where": f"cli.{where}",
                "error": repr(e),
                "duration_ms": int((time.monotonic() - started) * 1000),
            })
            return EXIT_FAILURE

    return _wrapper


def _run_foreground(ctl: DataQualityController, job_id: str) -> None:
    runs = ctl.run_pending()
    LOG.info("Ran %d invocation(s) for job %s", runs, job_id)
    _print_json(ctl.get_job_status(job_id))


# ------------------------------ Subcommands ----------------------------------
def cmd_validate_config(args: argparse.Namespace) -> int:
    cfg = _config_schema.load_config(args.config)
    _config_schema.validate(cfg)
    print("OK: configuration is valid.")
    return EXIT_OK


def cmd_start(args: argparse.Namespace) -> int:
    ctl = _controller(args)
    job_id = ctl.start_job(args.mode)
    print(job_id)
    if args.foreground:
        _run_foreground(ctl, job_id)
    else:
        print("Queued; a running `serve` will pick it up.", file=sys.stderr)
    return EXIT_OK


def cmd_resume(args: argparse.Namespace) -> int:
    ctl = _controller(args)
    ctl.resume_job(args.job_id)
    if args.foreground:
        _run_foreground(ctl, args.job_id)
    else:
        _print_json(ctl.get_job_status(args.job_id))
    return EXIT_OK


def cmd_pause(args: argparse.Namespace) -> int:
    ctl = _controller(args)
    job = ctl.pause_job(args.job_id)
    print(f"{job.job_id} {job.status.value} (pause requested)")
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    _print_json(_controller(args).get_job_status(args.job_id))
    return EXIT_OK


def cmd_stats(args: argparse.Namespace) -> int:
    _print_json(_controller(args).get_dashboard_stats())
    return EXIT_OK


def cmd_page(args: argparse.Namespace) -> int:
    ctl = _controller(args)
    if args.page is not None:
        result = ctl.jump_to_page(args.object_type, args.page, args.page_size)
    else:
        getters = {
            "issues": ctl.get_data_quality_issues,
            "duplicates": ctl.get_duplicate_records,
            "jobs": ctl.get_job_history,
        }
        result = getters[args.object_type](args.page_size, args.token, args.direction)
    _print_json(result.to_dict())
    return EXIT_OK


def cmd_resolve(args: argparse.Namespace) -> int:
    _print_json(_controller(args).resolve_issue(args.issue_id, args.resolution))
    return EXIT_OK


def cmd_merge(args: argparse.Namespace) -> int:
    _print_json(_controller(args).mark_duplicate_merged(args.duplicate_id))
    return EXIT_OK


def cmd_load(args: argparse.Namespace) -> int:
    cfg = _config_schema.load_config(args.config)
    settings = _config_schema.engine_settings(cfg)
    source = SqliteRecordSource(settings.records_path)
    source.init_db()
    inserted = source.ingest(args.dataset, iter_json_records(args.file))
    L.write_activity_log({
        "ts": _now_iso(),
        "event": "cli_load",
        "dataset": args.dataset,
        "file": args.file,
        "inserted": inserted,
    })
    print(f"Loaded {inserted} new record(s) into {args.dataset}.")
    return EXIT_OK


def cmd_purge_expired(args: argparse.Namespace) -> int:
    removed = _controller(args).purge_expired()
    print(f"Purged {removed} expired entr{'y' if removed == 1 else 'ies'}.")
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the scheduler loop until a termination signal is received."""
    L.write_activity_log({"ts": _now_iso(), "event": "serve_start"})

    stop_event = threading.Event()
    running = SimpleNamespace(sched=None)

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()
        _safe_stop("scheduler", running.sched)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        running.sched, _ctl = _scheduler.start(config_path=args.config)
        LOG.info("Scheduler started: %r", running.sched)

        while not stop_event.is_set():
            time.sleep(0.3)

        _safe_stop("scheduler", running.sched)
        L.write_activity_log({"ts": _now_iso(), "event": "serve_stop"})
        return EXIT_OK

    except KeyboardInterrupt:
        _graceful_shutdown("KeyboardInterrupt")
        return EXIT_INTERRUPTED
    except Exception as e:
        LOG.exception("Fatal error in serve: %s", e)
        _graceful_shutdown("UnhandledException")
        return EXIT_FAILURE


def _safe_stop(name: str, handle: Any) -> None:
    if handle is None:
        return
    try:
        handle.stop()
        handle.join(timeout=10.0)
    except Exception:  # pragma: no cover
        LOG.exception("Error stopping %s", name)


# ------------------------------- Argparse ------------------------------------
def _positive_int(value: str) -> int:
    try:
        iv = int(value)
    except ValueError as err:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from err
    if iv < 1:
        raise argparse.ArgumentTypeError(f"expected an integer >= 1, got {iv}")
    return iv


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="dq",
        description="Resumable data-quality batch engine",
    )
    p.add_argument(
        "--config",
        help="Path to config file (fallbacks to CONFIG_PATH env or built-in defaults).",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Run the scheduler loop (continuations, purge, recovery sweep).")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("start", help="Start a data-quality job.")
    sp.add_argument("mode", type=str.upper, choices=[m.value for m in ProcessingMode])
    sp.add_argument("--foreground", action="store_true", help="Run the whole job in this process.")
    sp.set_defaults(func=_guarded("start", cmd_start))

    sp = sub.add_parser("resume", help="Resume a paused or interrupted job.")
    sp.add_argument("job_id")
    sp.add_argument("--foreground", action="store_true", help="Run the remaining work in this process.")
    sp.set_defaults(func=_guarded("resume", cmd_resume))

    sp = sub.add_parser("pause", help="Pause a job at its next iteration boundary.")
    sp.add_argument("job_id")
    sp.set_defaults(func=_guarded("pause", cmd_pause))

    sp = sub.add_parser("status", help="Print a job's latest snapshot.")
    sp.add_argument("job_id")
    sp.set_defaults(func=_guarded("status", cmd_status))

    sp = sub.add_parser("stats", help="Print dashboard statistics.")
    sp.set_defaults(func=_guarded("stats", cmd_stats))

    sp = sub.add_parser("page", help="Print one page of issues, duplicates or jobs.")
    sp.add_argument("object_type", choices=["issues", "duplicates", "jobs"])
    sp.add_argument("--page-size", type=_positive_int, default=50)
    sp.add_argument("--token", default=None, help="cursor_state from a previous page")
    sp.add_argument("--direction", default="first", choices=["first", "last", "next", "previous"])
    sp.add_argument("--page", type=int, default=None, help="Jump straight to this page number.")
    sp.set_defaults(func=_guarded("page", cmd_page))

    sp = sub.add_parser("resolve", help="Mark an issue Resolved.")
    sp.add_argument("issue_id", type=int)
    sp.add_argument("--resolution", default="")
    sp.set_defaults(func=_guarded("resolve", cmd_resolve))

    sp = sub.add_parser("merge", help="Mark a duplicate pair Merged.")
    sp.add_argument("duplicate_id", type=int)
    sp.set_defaults(func=_guarded("merge", cmd_merge))

    sp = sub.add_parser("load", help="Load records from a JSON file into the record store.")
    sp.add_argument("dataset")
    sp.add_argument("file")
    sp.set_defaults(func=_guarded("load", cmd_load))

    sp = sub.add_parser("purge-expired", help="Delete expired cursor-store entries.")
    sp.set_defaults(func=_guarded("purge_expired", cmd_purge_expired))

    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=_guarded("validate_config", cmd_validate_config))

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
