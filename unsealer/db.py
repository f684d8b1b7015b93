from __future__ import annotations

import logging
import os
import sqlite3
from threading import Lock
from typing import Any

from .runtime import utc_now

logger = logging.getLogger(__name__)

_path: str | None = None
_lock = Lock()


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount docker created
    as a directory), the journal file is placed inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "vault-unsealer.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def configure(path: str | None) -> None:
    """Point the journal at a sqlite file. An empty path disables journaling."""
    global _path
    with _lock:
        _path = _resolve_db_path(path) if path else None
    if _path:
        init_db()


def enabled() -> bool:
    return _path is not None


def connect() -> sqlite3.Connection:
    if _path is None:
        raise RuntimeError("event journal is not configured")
    conn = sqlite3.connect(_path, check_same_thread=False, timeout=5.0)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              address TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, address: str | None = None) -> None:
    """Journal an event. A broken journal is logged, never raised to the caller."""
    if _path is None:
        return
    try:
        with _lock, connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, address, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level.upper(), address, message),
            )
    except sqlite3.Error as e:
        logger.warning("unable to journal event: %s", e)


def latest_events(limit: int = 100, address: str | None = None) -> list[dict[str, Any]]:
    if _path is None:
        return []
    with connect() as conn:
        if address:
            rows = conn.execute(
                "SELECT * FROM events WHERE address=? ORDER BY id DESC LIMIT ?", (address, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
