from __future__ import annotations

import contextlib
import os
import sqlite3
from collections.abc import Iterator

# Shared SQLite plumbing for the record, cursor and result stores.


def ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


@contextlib.contextmanager
def connect(sqlite_path: str) -> Iterator[sqlite3.Connection]:
    """
    Open a short-lived connection with pragmas applied and close it on exit.
    isolation_level=None gives autocommit mode; callers manage transactions explicitly.
    """
    ensure_dir(sqlite_path)
    conn = sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)
    try:
        apply_pragmas(conn)
        yield conn
    finally:
        conn.close()


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """BEGIN IMMEDIATE ... COMMIT, rolling back if the body raises."""
    cur = conn.cursor()
    cur.execute("BEGIN IMMEDIATE")
    try:
        yield cur
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA cache_size=-8000;")  # approx 8MB cache


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file (and WAL side files) entirely.
    Safe if it doesn't exist.
    """
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(sqlite_path + suffix)
