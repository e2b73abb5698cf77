from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Any

from .settings import settings

if TYPE_CHECKING:
    from .reconciler import ReconcileResult


logger = logging.getLogger("rpr")

_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}

_schema_lock = Lock()
_ready: set[str] = set()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "rpr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def _create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts TEXT NOT NULL,
          level TEXT NOT NULL,
          workload TEXT,
          event_id TEXT,
          message TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS reconciliations (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts TEXT NOT NULL,
          event_id TEXT NOT NULL,
          action TEXT NOT NULL,
          repository TEXT NOT NULL,
          tag TEXT NOT NULL,
          workload TEXT,
          deployment TEXT, -- created|updated
          service TEXT, -- created|updated
          ok INTEGER NOT NULL,
          error TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
        CREATE INDEX IF NOT EXISTS idx_reconciliations_workload ON reconciliations(workload);
        """
    )


def connect() -> sqlite3.Connection:
    path = _resolve_db_path()
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if path not in _ready:
        with _schema_lock:
            if path not in _ready:
                _create_schema(conn)
                _ready.add(path)
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        _create_schema(conn)


def log_event(level: str, message: str, workload: str | None = None, event_id: str | None = None) -> None:
    level = level.upper()
    if workload:
        logger.log(_LEVELS.get(level, logging.INFO), "[%s] %s", workload, message)
    else:
        logger.log(_LEVELS.get(level, logging.INFO), "%s", message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, workload, event_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, workload, event_id, message),
        )


def record_result(result: "ReconcileResult") -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO reconciliations (ts, event_id, action, repository, tag, workload, deployment, service, ok, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                utc_now(),
                result.event_id,
                result.action,
                result.repository,
                result.tag,
                result.workload,
                result.deployment,
                result.service,
                int(result.ok),
                result.error,
            ),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def latest_results(limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if workload:
            rows = conn.execute(
                "SELECT * FROM reconciliations WHERE workload=? ORDER BY id DESC LIMIT ?",
                (workload, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM reconciliations ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        out = [dict(r) for r in rows]
        for r in out:
            r["ok"] = bool(r["ok"])
        return out
