"""
Record sources the cursors read from.

  - InMemorySource: lists of dicts keyed by dataset (tests, dry runs)
  - SqliteRecordSource: the `records` table of the record store, filled by
    `dq load` from JSON files streamed with ijson
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from typing import Any

import ijson

from . import db
from .errors import DatasetUnavailable
from .models import DatasetSpec
from .utils import now_iso

LOG = logging.getLogger(__name__)


def _matches(spec: DatasetSpec, seq: int, record: dict[str, Any]) -> bool:
    if spec.upper_bound is not None and seq > spec.upper_bound:
        return False
    if spec.since and str(record.get("created_at") or "") < spec.since:
        return False
    if spec.min_priority is not None and int(record.get("priority") or 0) < spec.min_priority:
        return False
    return True


class InMemorySource:
    """
    Datasets held as Python lists. Insertion order is the sort order and the
    1-based list index is the insertion sequence used for snapshot bounds.
    """

    def __init__(self, datasets: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._datasets: dict[str, list[dict[str, Any]]] = {k: list(v) for k, v in (datasets or {}).items()}

    def append(self, dataset: str, record: dict[str, Any]) -> None:
        self._datasets.setdefault(dataset, []).append(record)

    def _rows(self, spec: DatasetSpec) -> list[dict[str, Any]]:
        if spec.name not in self._datasets:
            raise DatasetUnavailable(f"unknown dataset {spec.name!r}")
        return [r for i, r in enumerate(self._datasets[spec.name], start=1) if _matches(spec, i, r)]

    def count(self, spec: DatasetSpec) -> int:
        return len(self._rows(spec))

    def fetch(self, spec: DatasetSpec, offset: int, limit: int) -> list[dict[str, Any]]:
        return [dict(r) for r in self._rows(spec)[offset : offset + limit]]

    def snapshot_bound(self, spec: DatasetSpec) -> int | None:
        if spec.name not in self._datasets:
            raise DatasetUnavailable(f"unknown dataset {spec.name!r}")
        return len(self._datasets[spec.name])


class SqliteRecordSource:
    """Datasets stored as JSON payload rows in one SQLite table."""

    def __init__(self, sqlite_path: str) -> None:
        self.sqlite_path = sqlite_path

    def init_db(self) -> None:
        with db.connect(self.sqlite_path) as conn:
            _ensure_schema(conn)

    # ---- RecordSource -------------------------------------------------------

    def count(self, spec: DatasetSpec) -> int:
        where, params = _where(spec)
        (n,) = self._query_one(f"SELECT COUNT(*) FROM records WHERE {where}", params)
        return int(n or 0)

    def fetch(self, spec: DatasetSpec, offset: int, limit: int) -> list[dict[str, Any]]:
        where, params = _where(spec)
        sql = (
            f"SELECT record_id, created_at, priority, payload FROM records WHERE {where} "
            "ORDER BY seq LIMIT ? OFFSET ?"
        )
        rows = self._query_all(sql, [*params, int(limit), int(offset)])
        out: list[dict[str, Any]] = []
        for record_id, created_at, priority, payload in rows:
            rec = json.loads(payload)
            rec.update({"id": record_id, "created_at": created_at, "priority": priority})
            out.append(rec)
        return out

    def snapshot_bound(self, spec: DatasetSpec) -> int | None:
        (bound,) = self._query_one("SELECT MAX(seq) FROM records WHERE dataset = ?", [spec.name])
        return int(bound or 0)

    # ---- loading ------------------------------------------------------------

    def ingest(self, dataset: str, records: Iterable[dict[str, Any]], chunk_size: int = 1000) -> int:
        """
        Insert records for `dataset`, ignoring ids already present.
        Each record needs an `id` (or `Id`); `created_at` defaults to now and
        `priority` to 0. Returns the number of rows actually inserted.
        """
        inserted = 0
        chunk: list[tuple[str, str, str, int, str]] = []
        with db.connect(self.sqlite_path) as conn:
            _ensure_schema(conn)
            for rec in records:
                if not isinstance(rec, dict):
                    LOG.warning("Skipping non-object record in %s: %r", dataset, rec)
                    continue
                record_id = rec.get("id", rec.get("Id"))
                if record_id in (None, ""):
                    LOG.warning("Skipping record without id in %s", dataset)
                    continue
                chunk.append((
                    dataset,
                    str(record_id),
                    str(rec.get("created_at") or now_iso()),
                    int(rec.get("priority") or 0),
                    json.dumps(rec, ensure_ascii=False, default=str),
                ))
                if len(chunk) >= chunk_size:
                    inserted += _insert_chunk(conn, chunk)
                    chunk = []
            if chunk:
                inserted += _insert_chunk(conn, chunk)
        return inserted

    # ---- internals ----------------------------------------------------------

    def _query_one(self, sql: str, params: list[Any]) -> tuple:
        try:
            with db.connect(self.sqlite_path) as conn:
                _ensure_schema(conn)
                return conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise DatasetUnavailable(f"record store query failed: {e}") from e

    def _query_all(self, sql: str, params: list[Any]) -> list[tuple]:
        try:
            with db.connect(self.sqlite_path) as conn:
                _ensure_schema(conn)
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DatasetUnavailable(f"record store query failed: {e}") from e


def iter_json_records(path: str) -> Iterator[dict[str, Any]]:
    """
    Stream records from a file holding either one top-level JSON array or
    concatenated/newline-delimited JSON objects, without loading it whole.
    """
    with open(path, "rb") as f:
        first = b""
        while True:
            ch = f.read(1)
            if not ch or not ch.isspace():
                first = ch
                break
        f.seek(0)
        if first == b"[":
            yield from ijson.items(f, "item", use_float=True)
        else:
            yield from ijson.items(f, "", multiple_values=True, use_float=True)


def _where(spec: DatasetSpec) -> tuple[str, list[Any]]:
    clauses = ["dataset = ?"]
    params: list[Any] = [spec.name]
    if spec.since:
        clauses.append("created_at >= ?")
        params.append(spec.since)
    if spec.min_priority is not None:
        clauses.append("priority >= ?")
        params.append(int(spec.min_priority))
    if spec.upper_bound is not None:
        clauses.append("seq <= ?")
        params.append(int(spec.upper_bound))
    return " AND ".join(clauses), params


def _insert_chunk(conn: sqlite3.Connection, chunk: list[tuple[str, str, str, int, str]]) -> int:
    with db.transaction(conn) as cur:
        before = conn.total_changes
        cur.executemany(
            """
            INSERT OR IGNORE INTO records (dataset, record_id, created_at, priority, payload)
            VALUES (?, ?, ?, ?, ?)
            """,
            chunk,
        )
        return conn.total_changes - before


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS records (
          seq INTEGER PRIMARY KEY,
          dataset TEXT NOT NULL,
          record_id TEXT NOT NULL,
          created_at TEXT NOT NULL,
          priority INTEGER NOT NULL DEFAULT 0,
          payload TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS ux_records_dataset_id ON records (dataset, record_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS ix_records_dataset_seq ON records (dataset, seq);")
