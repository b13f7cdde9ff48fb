"""SQLite keyed store for task and DAG records.

Records are JSON documents addressed by ``(kind, id)``. The engine only
ever writes whole records, so the schema stays a single table.
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from foreman.paths import DEFAULT_DB_PATH

KIND_TASK = "task"
KIND_DAG = "dag"
VALID_RECORD_KINDS = {KIND_TASK, KIND_DAG}

SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS records (
    kind TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    PRIMARY KEY (kind, id)
);
"""


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            put_record(conn, "task", task_id, payload)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _validate_kind(kind: str) -> None:
    if kind not in VALID_RECORD_KINDS:
        raise ValueError(f"Invalid record kind '{kind}'. Must be one of: {VALID_RECORD_KINDS}")


def put_record(conn: sqlite3.Connection, kind: str, record_id: str, data: dict[str, Any]) -> None:
    _validate_kind(kind)
    conn.execute(
        "INSERT INTO records (kind, id, data) VALUES (?, ?, ?) "
        "ON CONFLICT(kind, id) DO UPDATE SET data = excluded.data, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')",
        (kind, record_id, json.dumps(data, sort_keys=True, default=str)),
    )
    conn.commit()


def get_record(conn: sqlite3.Connection, kind: str, record_id: str) -> dict[str, Any] | None:
    _validate_kind(kind)
    row = conn.execute(
        "SELECT data FROM records WHERE kind = ? AND id = ?", (kind, record_id)
    ).fetchone()
    return json.loads(row["data"]) if row else None


def list_records(conn: sqlite3.Connection, kind: str) -> list[dict[str, Any]]:
    _validate_kind(kind)
    rows = conn.execute(
        "SELECT data FROM records WHERE kind = ? ORDER BY created_at, rowid", (kind,)
    ).fetchall()
    return [json.loads(row["data"]) for row in rows]


def delete_record(conn: sqlite3.Connection, kind: str, record_id: str) -> bool:
    _validate_kind(kind)
    cursor = conn.execute("DELETE FROM records WHERE kind = ? AND id = ?", (kind, record_id))
    conn.commit()
    return cursor.rowcount > 0


class KeyedStore:
    """Path-bound store shared by the coordinator and DAG executor.

    Holds one connection guarded by a lock; writers from different DAG
    locks may call in concurrently.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path
        self._conn = get_connection(db_path)
        self._lock = threading.Lock()

    def put(self, kind: str, record_id: str, data: dict[str, Any]) -> None:
        with self._lock:
            put_record(self._conn, kind, record_id, data)

    def get(self, kind: str, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            return get_record(self._conn, kind, record_id)

    def list(self, kind: str) -> list[dict[str, Any]]:
        with self._lock:
            return list_records(self._conn, kind)

    def delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            return delete_record(self._conn, kind, record_id)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> KeyedStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
