#!/usr/bin/env python3
"""
progress_summary.py: latest progress snapshot per data-quality job, read
from the JSONL progress logs.

Each line of progress-YYYY-MM-DD.jsonl is a full job snapshot, so the newest
line per job (highest checkpoint sequence, then timestamp) is its state.
"""

import argparse
import sys
from collections import namedtuple
from datetime import datetime, timezone
from pathlib import Path

import ijson

# ----------------------------------------------------------------------
JobSnapshot = namedtuple(
    "JobSnapshot",
    ["timestamp", "job_id", "mode", "status", "processed", "total", "issues", "duplicates", "score", "executions",
     "checkpoint", "error", "log_file"],
)


# ----------------------------------------------------------------------
def parse_iso(ts: str | None) -> datetime | None:
    """Parse ISO-8601 string to timezone-aware UTC datetime."""
    if not ts:
        return None
    ts = ts.strip()
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


# ----------------------------------------------------------------------
def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarize data-quality job progress from progress logs",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-dir", type=Path, help="Directory containing progress-*.jsonl files")
    parser.add_argument("--status", nargs="+", help="Only show jobs in these statuses (e.g. Running Error)")
    parser.add_argument("--job", help="Only show this job id")
    return parser.parse_args(argv)


# ----------------------------------------------------------------------
def snapshot_from(item: object, log_file: Path) -> JobSnapshot | None:
    if not isinstance(item, dict) or item.get("op") != "progress" or not item.get("job_id"):
        return None
    return JobSnapshot(
        timestamp=parse_iso(item.get("ts")),
        job_id=str(item["job_id"]),
        mode=str(item.get("mode") or ""),
        status=str(item.get("status") or ""),
        processed=int(item.get("processed_records") or 0),
        total=int(item.get("total_records") or 0),
        issues=int(item.get("issues_found") or 0),
        duplicates=int(item.get("duplicates_found") or 0),
        score=float(item.get("average_quality_score") or 0.0),
        executions=int(item.get("execution_count") or 0),
        checkpoint=int(item.get("checkpoint_seq") or 0),
        error=item.get("error_message"),
        log_file=log_file.name,
    )


def newer(a: JobSnapshot, b: JobSnapshot | None) -> bool:
    if b is None:
        return True
    if a.checkpoint != b.checkpoint:
        return a.checkpoint > b.checkpoint
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return (a.timestamp or epoch) >= (b.timestamp or epoch)


def collect(log_files: list[Path]) -> dict[str, JobSnapshot]:
    latest: dict[str, JobSnapshot] = {}
    for log_file in log_files:
        try:
            with open(log_file, "rb") as f:
                for item in ijson.items(f, "", multiple_values=True, use_float=True):
                    snap = snapshot_from(item, log_file)
                    if snap and newer(snap, latest.get(snap.job_id)):
                        latest[snap.job_id] = snap
        except (OSError, ijson.JSONError) as e:
            print(f"Warning: Failed to read {log_file}: {e}", file=sys.stderr)
    return latest


# ----------------------------------------------------------------------
def main(argv=None) -> int:
    args = parse_args(argv)

    script_dir = Path(__file__).resolve().parent
    log_dir: Path = (args.log_dir or (script_dir / ".." / "local" / "logs")).resolve()
    if not log_dir.is_dir():
        print(f"Error: Log directory not found: {log_dir}", file=sys.stderr)
        return 1

    log_files = sorted(log_dir.glob("progress-*.jsonl"))
    if not log_files:
        print(f"No progress-*.jsonl files found in {log_dir}")
        return 0

    latest = collect(log_files)
    rows = sorted(latest.values(), key=lambda s: s.timestamp or datetime.min.replace(tzinfo=timezone.utc))
    if args.job:
        rows = [r for r in rows if r.job_id == args.job]
    if args.status:
        wanted = {s.lower() for s in args.status}
        rows = [r for r in rows if r.status.lower() in wanted]

    if not rows:
        print("No matching jobs.")
        return 0

    print(f"{'JOB':<32}  {'MODE':<20}  {'STATUS':<9}  {'PROGRESS':>17}  {'ISSUES':>6}  {'DUPS':>5}  "
          f"{'SCORE':>6}  {'RUNS':>4}")
    for r in rows:
        pct = (100.0 * r.processed / r.total) if r.total else 0.0
        progress = f"{r.processed}/{r.total} {pct:5.1f}%"
        print(f"{r.job_id:<32}  {r.mode:<20}  {r.status:<9}  {progress:>17}  {r.issues:>6}  {r.duplicates:>5}  "
              f"{r.score:>6.2f}  {r.executions:>4}")
        if r.error:
            print(f"    error: {r.error}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
