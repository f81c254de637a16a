"""
Durable key/value store for cursor state and job records, with per-key expiry.

This is the only mutable state shared across invocations. Keys are scoped to
(job_id, dataset) and writes are last-writer-wins, so at most one invocation
per job may be active at a time; the job_lease table enforces that across
processes.

Expired rows are not deleted on read: keeping them until purge_expired() lets
a late resume tell "expired" apart from "never existed".
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator, Mapping
from typing import Any

from . import db
from .errors import StateExpired, StateNotFound, StoreUnavailable

LOG = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 48 * 3600

_JOB_KEY = "__job__"


class CursorStore:
    def __init__(self, sqlite_path: str, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.sqlite_path = sqlite_path
        self.ttl_seconds = float(ttl_seconds)
        with self._conn() as conn:
            _ensure_schema(conn)

    # ---- cursor state -------------------------------------------------------

    def put(self, job_id: str, dataset: str, data: bytes, ttl: float | None = None) -> None:
        self.put_many(job_id, {dataset: data}, ttl=ttl)

    def put_many(self, job_id: str, entries: Mapping[str, bytes], ttl: float | None = None) -> None:
        """Write several cursor states for one job in a single transaction."""
        if not entries:
            return
        expires = time.time() + (ttl if ttl is not None else self.ttl_seconds)
        rows = [(job_id, ds, sqlite3.Binary(bytes(data)), expires) for ds, data in entries.items()]
        with self._conn() as conn, db.transaction(conn) as cur:
            cur.executemany(
                """
                INSERT INTO kv_state (job_id, dataset, data, expires_at) VALUES (?, ?, ?, ?)
                ON CONFLICT (job_id, dataset) DO UPDATE SET data = excluded.data, expires_at = excluded.expires_at
                """,
                rows,
            )

    def get(self, job_id: str, dataset: str) -> bytes:
        """
        Raises:
            StateNotFound: no entry for the key.
            StateExpired: the entry is past its expiry.
        """
        with self._conn() as conn:
            row = conn.execute(
                "SELECT data, expires_at FROM kv_state WHERE job_id = ? AND dataset = ?",
                (job_id, dataset),
            ).fetchone()
        if row is None:
            raise StateNotFound(f"no state for {job_id}/{dataset}")
        data, expires_at = row
        if expires_at <= time.time():
            raise StateExpired(f"state for {job_id}/{dataset} expired")
        return bytes(data)

    # ---- job records --------------------------------------------------------

    def put_job(self, job_id: str, record: Mapping[str, Any], ttl: float | None = None) -> None:
        self.put(job_id, _JOB_KEY, json.dumps(dict(record), sort_keys=True).encode("utf-8"), ttl=ttl)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return json.loads(self.get(job_id, _JOB_KEY).decode("utf-8"))

    def list_jobs(self) -> Iterator[dict[str, Any]]:
        """Yield every unexpired job record."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT data FROM kv_state WHERE dataset = ? AND expires_at > ? ORDER BY job_id",
                (_JOB_KEY, time.time()),
            ).fetchall()
        for (data,) in rows:
            yield json.loads(bytes(data).decode("utf-8"))

    # ---- pause control ------------------------------------------------------

    def request_pause(self, job_id: str) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO job_control (job_id, pause_requested) VALUES (?, 1) "
                "ON CONFLICT (job_id) DO UPDATE SET pause_requested = 1",
                (job_id,),
            )

    def clear_pause(self, job_id: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM job_control WHERE job_id = ?", (job_id,))

    def is_pause_requested(self, job_id: str) -> bool:
        with self._conn() as conn:
            row = conn.execute("SELECT pause_requested FROM job_control WHERE job_id = ?", (job_id,)).fetchone()
        return bool(row and row[0])

    # ---- invocation lease ---------------------------------------------------
    #
    # One row per job naming the invocation allowed to write its state. Every
    # process sharing this file sees it, so `serve` and a foreground CLI run
    # cannot drive the same job at once. A lease whose holder died lapses at
    # lease_until.

    def acquire_lease(self, job_id: str, owner: str, ttl: float) -> bool:
        """Take (or renew) the lease for `owner`; False while someone else holds it."""
        now = time.time()
        with self._conn() as conn, db.transaction(conn) as cur:
            before = conn.total_changes
            cur.execute(
                """
                INSERT INTO job_lease (job_id, owner, lease_until) VALUES (?, ?, ?)
                ON CONFLICT (job_id) DO UPDATE SET owner = excluded.owner, lease_until = excluded.lease_until
                WHERE job_lease.owner = excluded.owner OR job_lease.lease_until <= ?
                """,
                (job_id, owner, now + float(ttl), now),
            )
            return conn.total_changes > before

    def release_lease(self, job_id: str, owner: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM job_lease WHERE job_id = ? AND owner = ?", (job_id, owner))

    def lease_holder(self, job_id: str) -> str | None:
        """Owner of the live lease on `job_id`, or None."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT owner FROM job_lease WHERE job_id = ? AND lease_until > ?",
                (job_id, time.time()),
            ).fetchone()
        return row[0] if row else None

    # ---- housekeeping -------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete expired entries; returns how many rows were removed."""
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM kv_state WHERE expires_at <= ?", (time.time(),))
            removed = cur.rowcount
        if removed:
            LOG.info("Purged %d expired cursor-store entries", removed)
        return removed

    # ---- internals ----------------------------------------------------------

    def _conn(self):
        return _StoreConnection(self.sqlite_path)


class _StoreConnection:
    """db.connect() that reports sqlite failures as StoreUnavailable."""

    def __init__(self, sqlite_path: str) -> None:
        self._cm = db.connect(sqlite_path)

    def __enter__(self) -> sqlite3.Connection:
        try:
            return self._cm.__enter__()
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailable(f"cursor store unavailable: {e}") from e

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._cm.__exit__(exc_type, exc, tb)
        if exc is not None and isinstance(exc, sqlite3.Error):
            raise StoreUnavailable(f"cursor store operation failed: {exc}") from exc
        return False


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_state (
          job_id TEXT NOT NULL,
          dataset TEXT NOT NULL,
          data BLOB NOT NULL,
          expires_at REAL NOT NULL,
          PRIMARY KEY (job_id, dataset)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS ix_kv_state_expires ON kv_state (expires_at);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_control (
          job_id TEXT PRIMARY KEY,
          pause_requested INTEGER NOT NULL DEFAULT 0
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_lease (
          job_id TEXT PRIMARY KEY,
          owner TEXT NOT NULL,
          lease_until REAL NOT NULL
        );
        """
    )
