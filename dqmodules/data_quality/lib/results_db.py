from __future__ import annotations

import contextlib
import json
import sqlite3
from collections.abc import Iterable, Iterator
from typing import Any

from . import db
from .errors import DatasetUnavailable, RecordNotFound
from .logging_bridge import error as log_error
from .models import DatasetSpec, Duplicate, Issue, Job, JobStatus, Severity
from .utils import now_iso

ISSUE_OPEN = "Open"
ISSUE_RESOLVED = "Resolved"
DUPLICATE_PENDING = "Pending"
DUPLICATE_MERGED = "Merged"

# ---- Public API -------------------------------------------------------------


def init_db(sqlite_path: str) -> None:
    """
    Ensure the result database and schema exist.
    Safe to call multiple times.
    """
    with _open(sqlite_path):
        pass


def insert_issues(sqlite_path: str, issues: Iterable[Issue]) -> int:
    """
    Record issues, ignoring any already present for the same
    (job_id, object_type, record_id, issue_type, field).

    Returns:
        Number of NEW rows.
    """
    ts = now_iso()
    rows = [
        (i.job_id, i.object_type, i.record_id, i.issue_type, i.field or "", i.severity, i.description, ISSUE_OPEN, ts, ts)
        for i in issues
    ]
    if not rows:
        return 0
    return _insert_many(
        sqlite_path,
        "insert_issues",
        """
        INSERT OR IGNORE INTO issues
          (job_id, object_type, record_id, issue_type, field, severity, description, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )


def insert_duplicates(sqlite_path: str, duplicates: Iterable[Duplicate]) -> int:
    """
    Record duplicate pairs, ignoring pairs already present for the job.

    Returns:
        Number of NEW rows.
    """
    ts = now_iso()
    rows = [
        (d.job_id, d.object_type, d.record_1_id, d.record_2_id, float(d.match_score), DUPLICATE_PENDING, ts, ts)
        for d in duplicates
    ]
    if not rows:
        return 0
    return _insert_many(
        sqlite_path,
        "insert_duplicates",
        """
        INSERT OR IGNORE INTO duplicates
          (job_id, object_type, record_1_id, record_2_id, match_score, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )


def claim_match_key(sqlite_path: str, job_id: str, object_type: str, match_key: str, record_id: str) -> str:
    """
    Claim `match_key` for `record_id` unless another record already holds it.

    Returns:
        The record id that owns the key (which is `record_id` itself on first claim).
    """
    with _open(sqlite_path) as conn, db.transaction(conn) as cur:
        cur.execute(
            "INSERT OR IGNORE INTO match_keys (job_id, object_type, match_key, record_id) VALUES (?, ?, ?, ?)",
            (job_id, object_type, match_key, record_id),
        )
        (owner,) = cur.execute(
            "SELECT record_id FROM match_keys WHERE job_id = ? AND object_type = ? AND match_key = ?",
            (job_id, object_type, match_key),
        ).fetchone()
    return str(owner)


def count_issues(sqlite_path: str, job_id: str) -> int:
    with _open(sqlite_path) as conn:
        (n,) = conn.execute("SELECT COUNT(*) FROM issues WHERE job_id = ?", (job_id,)).fetchone()
    return int(n or 0)


def count_duplicates(sqlite_path: str, job_id: str) -> int:
    with _open(sqlite_path) as conn:
        (n,) = conn.execute("SELECT COUNT(*) FROM duplicates WHERE job_id = ?", (job_id,)).fetchone()
    return int(n or 0)


def upsert_job(sqlite_path: str, job: Job) -> None:
    """Mirror the latest job snapshot into job_history (kept past the cursor-store TTL)."""
    snapshot = json.dumps(job.to_dict(), sort_keys=True)
    with _open(sqlite_path) as conn:
        conn.execute(
            """
            INSERT INTO job_history (job_id, mode, status, average_quality_score, snapshot, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (job_id) DO UPDATE SET
              status = excluded.status,
              average_quality_score = excluded.average_quality_score,
              snapshot = excluded.snapshot,
              updated_at = excluded.updated_at
            """,
            (
                job.job_id,
                job.mode.value,
                job.status.value,
                float(job.average_quality_score),
                snapshot,
                job.created_at,
                job.updated_at,
            ),
        )


def get_job(sqlite_path: str, job_id: str) -> Job | None:
    with _open(sqlite_path) as conn:
        row = conn.execute("SELECT snapshot FROM job_history WHERE job_id = ?", (job_id,)).fetchone()
    if row is None:
        return None
    return Job.from_dict(json.loads(row[0]))


def dashboard_stats(sqlite_path: str) -> dict[str, Any]:
    """
    Summary for the dashboard header:
      - severity_counts: open issues per severity (all four keys always present)
      - open_issues / pending_duplicates
      - avg_quality_score: mean of completed jobs' average scores (0.0 when none)
    """
    severity_counts = {s.value: 0 for s in Severity}
    with _open(sqlite_path) as conn:
        for severity, n in conn.execute(
            "SELECT severity, COUNT(*) FROM issues WHERE status = ? GROUP BY severity", (ISSUE_OPEN,)
        ):
            severity_counts[str(severity)] = int(n)
        (pending,) = conn.execute(
            "SELECT COUNT(*) FROM duplicates WHERE status = ?", (DUPLICATE_PENDING,)
        ).fetchone()
        avg, completed = conn.execute(
            "SELECT AVG(average_quality_score), COUNT(*) FROM job_history WHERE status = ?",
            (JobStatus.COMPLETED.value,),
        ).fetchone()
    return {
        "severity_counts": severity_counts,
        "open_issues": sum(severity_counts.values()),
        "pending_duplicates": int(pending or 0),
        "avg_quality_score": round(float(avg), 2) if avg is not None else 0.0,
        "completed_jobs": int(completed or 0),
    }


def resolve_issue(sqlite_path: str, issue_id: int, resolution: str = "") -> dict[str, Any]:
    """
    Mark an issue Resolved. Raises RecordNotFound for an unknown id.
    Resolving an already-resolved issue just updates the resolution text.
    """
    with _open(sqlite_path) as conn:
        cur = conn.execute(
            "UPDATE issues SET status = ?, resolution = ?, updated_at = ? WHERE id = ?",
            (ISSUE_RESOLVED, resolution, now_iso(), int(issue_id)),
        )
        if cur.rowcount == 0:
            raise RecordNotFound(f"issue {issue_id} not found")
        return _row_dict(conn, "SELECT * FROM issues WHERE id = ?", (int(issue_id),))


def mark_duplicate_merged(sqlite_path: str, duplicate_id: int) -> dict[str, Any]:
    """Mark a duplicate pair Merged. Raises RecordNotFound for an unknown id."""
    with _open(sqlite_path) as conn:
        cur = conn.execute(
            "UPDATE duplicates SET status = ?, updated_at = ? WHERE id = ?",
            (DUPLICATE_MERGED, now_iso(), int(duplicate_id)),
        )
        if cur.rowcount == 0:
            raise RecordNotFound(f"duplicate {duplicate_id} not found")
        return _row_dict(conn, "SELECT * FROM duplicates WHERE id = ?", (int(duplicate_id),))


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file entirely (for pytest fixtures).
    Safe if it doesn't exist.
    """
    db.reset_db(sqlite_path)


# ---- Paged reads ------------------------------------------------------------

# dataset -> (table, newest first?)
_PAGED_TABLES = {
    "issues": ("issues", False),
    "duplicates": ("duplicates", False),
    "jobs": ("job_history", True),
}


class ResultsSource:
    """
    RecordSource over the result tables so the pagination service can page
    issues, duplicates and job history. The snapshot bound is the table's
    highest row id: rows added after the first page stay off later pages.
    """

    datasets = tuple(_PAGED_TABLES)

    def __init__(self, sqlite_path: str) -> None:
        self.sqlite_path = sqlite_path

    def count(self, spec: DatasetSpec) -> int:
        table, _ = _table_for(spec)
        where, params = _bound_clause(spec)
        with self._conn() as conn:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM {table}{where}", params).fetchone()
        return int(n or 0)

    def fetch(self, spec: DatasetSpec, offset: int, limit: int) -> list[dict[str, Any]]:
        table, newest_first = _table_for(spec)
        where, params = _bound_clause(spec)
        order = "DESC" if newest_first else "ASC"
        with self._conn() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                f"SELECT * FROM {table}{where} ORDER BY id {order} LIMIT ? OFFSET ?",
                [*params, int(limit), int(offset)],
            ).fetchall()
        if table == "job_history":
            return [_job_row(r) for r in rows]
        return [dict(r) for r in rows]

    def snapshot_bound(self, spec: DatasetSpec) -> int | None:
        table, _ = _table_for(spec)
        with self._conn() as conn:
            (bound,) = conn.execute(f"SELECT MAX(id) FROM {table}").fetchone()
        return int(bound or 0)

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            with _open(self.sqlite_path) as conn:
                yield conn
        except sqlite3.Error as e:
            raise DatasetUnavailable(f"result store query failed: {e}") from e


# ---- Internal utilities -----------------------------------------------------


@contextlib.contextmanager
def _open(sqlite_path: str) -> Iterator[sqlite3.Connection]:
    with db.connect(sqlite_path) as conn:
        _ensure_schema(conn)
        yield conn


def _insert_many(sqlite_path: str, op: str, sql: str, rows: list[tuple]) -> int:
    try:
        with _open(sqlite_path) as conn, db.transaction(conn) as cur:
            before = conn.total_changes
            cur.executemany(sql, rows)
            return conn.total_changes - before
    except Exception as e:
        # Surface to caller, but also log a structured error.
        log_error({
            "component": "data_quality.results_db",
            "op": op,
            "sqlite_path": sqlite_path,
            "error": repr(e),
        })
        raise


def _row_dict(conn: sqlite3.Connection, sql: str, params: tuple) -> dict[str, Any]:
    cur = conn.execute(sql, params)
    names = [c[0] for c in cur.description]
    return dict(zip(names, cur.fetchone()))


def _table_for(spec: DatasetSpec) -> tuple[str, bool]:
    try:
        return _PAGED_TABLES[spec.name]
    except KeyError:
        raise DatasetUnavailable(f"unknown result dataset {spec.name!r}") from None


def _bound_clause(spec: DatasetSpec) -> tuple[str, list[Any]]:
    if spec.upper_bound is None:
        return "", []
    return " WHERE id <= ?", [int(spec.upper_bound)]


def _job_row(row: sqlite3.Row) -> dict[str, Any]:
    out = json.loads(row["snapshot"])
    out["id"] = row["id"]
    return out


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS issues (
          id INTEGER PRIMARY KEY,
          job_id TEXT NOT NULL,
          object_type TEXT NOT NULL,
          record_id TEXT NOT NULL,
          issue_type TEXT NOT NULL,
          field TEXT NOT NULL DEFAULT '',
          severity TEXT NOT NULL,
          description TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'Open',
          resolution TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_issues_dedupe
          ON issues (job_id, object_type, record_id, issue_type, field);
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS duplicates (
          id INTEGER PRIMARY KEY,
          job_id TEXT NOT NULL,
          object_type TEXT NOT NULL,
          record_1_id TEXT NOT NULL,
          record_2_id TEXT NOT NULL,
          match_score REAL NOT NULL,
          status TEXT NOT NULL DEFAULT 'Pending',
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_duplicates_dedupe
          ON duplicates (job_id, object_type, record_1_id, record_2_id);
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS match_keys (
          job_id TEXT NOT NULL,
          object_type TEXT NOT NULL,
          match_key TEXT NOT NULL,
          record_id TEXT NOT NULL,
          PRIMARY KEY (job_id, object_type, match_key)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_history (
          id INTEGER PRIMARY KEY,
          job_id TEXT NOT NULL UNIQUE,
          mode TEXT NOT NULL,
          status TEXT NOT NULL,
          average_quality_score REAL NOT NULL DEFAULT 0,
          snapshot TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
