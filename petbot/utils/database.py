"""
SQLite persistence for the bot-trading service.

Two tables:
- `event_stream`: append-only log of request status transitions (history view).
- `bot_requests`: durable copy of trade/custody request documents, keyed by id.

Writes share one persistent connection guarded by a lock; reads open a short-lived
query-only connection so the API never holds write locks.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from functools import wraps
from pathlib import Path
from typing import Any, Callable, ParamSpec, TypeVar

import pandas as pd

logger = logging.getLogger(__name__)

# Keep the database in the project root regardless of where the process is started from.
DB_PATH = (os.environ.get("PETBOT_DB_PATH") or "").strip() or str(
    Path(__file__).resolve().parents[2] / "petbot.db"
)

P = ParamSpec("P")
T = TypeVar("T")

_write_conn_lock = threading.RLock()
_write_conn: sqlite3.Connection | None = None


def _get_write_conn() -> sqlite3.Connection:
    """
    Get the persistent write connection for the service process.
    Creates the connection on first use. Thread-safe.
    """
    global _write_conn
    if _write_conn is None:
        with _write_conn_lock:
            if _write_conn is None:
                _write_conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
                _write_conn.execute("PRAGMA journal_mode=WAL")
                _write_conn.execute("PRAGMA synchronous=NORMAL")
                _write_conn.execute("PRAGMA busy_timeout=10000")
                logger.info("Opened persistent write connection to %s", DB_PATH)
    return _write_conn


def close_write_conn() -> None:
    """Close the persistent write connection (call on shutdown)."""
    global _write_conn
    if _write_conn is not None:
        with _write_conn_lock:
            if _write_conn is not None:
                _write_conn.close()
                _write_conn = None
                logger.info("Closed persistent write connection")


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for database read functions that returns a default value on error.
    Prevents the API from crashing when the database is locked or unavailable.
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                logger.warning(f"Database read failed ({func.__name__}): {e}")
                return default_factory()
            except sqlite3.DatabaseError as e:
                logger.error(f"Database error ({func.__name__}): {e}")
                return default_factory()
        return wrapper
    return decorator


def _connect_ro() -> sqlite3.Connection:
    """Short-lived read connection in autocommit, query-only mode."""
    conn = sqlite3.connect(DB_PATH, timeout=2, isolation_level=None)
    conn.execute("PRAGMA query_only = 1")
    return conn


def init_db() -> None:
    """Initialise/upgrade the SQLite database schema (idempotent)."""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                request_id TEXT,
                kind TEXT,
                status TEXT,
                message TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS bot_requests (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                doc_json TEXT NOT NULL
            )
            """
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_bot_requests_status ON bot_requests (kind, status)")
        conn.commit()
    finally:
        conn.close()


def log_event(
    level: str,
    message: str,
    request_id: str | None = None,
    kind: str | None = None,
    status: str | None = None,
) -> None:
    with _write_conn_lock:
        conn = _get_write_conn()
        conn.execute(
            "INSERT INTO event_stream (level, request_id, kind, status, message) VALUES (?, ?, ?, ?, ?)",
            (level, request_id, kind, status, message),
        )
        conn.commit()


@safe_db_read(default_factory=pd.DataFrame)
def get_events(limit: int = 200, request_id: str | None = None) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        if request_id:
            return pd.read_sql_query(
                "SELECT * FROM event_stream WHERE request_id = ? ORDER BY id DESC LIMIT ?",
                conn,
                params=(request_id, int(limit)),
            )
        return pd.read_sql_query(
            "SELECT * FROM event_stream ORDER BY id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()


def save_request(request_id: str, kind: str, status: str, doc: dict[str, Any]) -> None:
    with _write_conn_lock:
        conn = _get_write_conn()
        conn.execute(
            """
            INSERT INTO bot_requests (id, kind, status, updated_at, doc_json)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                updated_at = excluded.updated_at,
                doc_json = excluded.doc_json
            """,
            (request_id, kind, status, json.dumps(doc, ensure_ascii=False)),
        )
        conn.commit()


def get_request_doc(request_id: str) -> dict[str, Any] | None:
    conn = _connect_ro()
    try:
        row = conn.execute("SELECT doc_json FROM bot_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            return None
        return json.loads(str(row[0]))
    finally:
        conn.close()


def list_request_docs(kind: str | None = None, statuses: list[str] | None = None, limit: int = 500) -> list[dict[str, Any]]:
    sql = "SELECT doc_json FROM bot_requests"
    clauses: list[str] = []
    params: list[Any] = []
    if kind:
        clauses.append("kind = ?")
        params.append(kind)
    if statuses:
        clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
        params.extend(statuses)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY updated_at DESC LIMIT ?"
    params.append(int(limit))

    conn = _connect_ro()
    try:
        return [json.loads(str(r[0])) for r in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()


def check_db() -> bool:
    """Quick DB connectivity test."""
    conn = _connect_ro()
    try:
        conn.execute("SELECT 1").fetchone()
        return True
    finally:
        conn.close()
