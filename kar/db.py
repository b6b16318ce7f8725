from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

from .settings import settings

logger = logging.getLogger("kar")

_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount of a path that did
    not exist yet), the DB file goes inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "kar.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back on error, always close."""
    with closing(connect()) as conn, conn:
        yield conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with transaction() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS assemblies (
              namespace TEXT NOT NULL,
              name TEXT NOT NULL,
              spec_json TEXT,
              updated_at TEXT NOT NULL,
              PRIMARY KEY(namespace, name)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              namespace TEXT,
              assembly TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, namespace: str | None = None, assembly: str | None = None) -> None:
    level = level.upper()
    where = f"{namespace}/{assembly}" if assembly else namespace
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{where}] " if where else "", message)
    with transaction() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, namespace, assembly, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, namespace, assembly, message),
        )


@dataclass(frozen=True)
class AssemblyRow:
    namespace: str
    name: str
    spec_json: str | None
    updated_at: str


def upsert_assembly(namespace: str, name: str, spec_json: str | None) -> None:
    """Remember an assembly and its last-known spec."""
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO assemblies (namespace, name, spec_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(namespace, name) DO UPDATE SET
              spec_json=COALESCE(excluded.spec_json, assemblies.spec_json),
              updated_at=excluded.updated_at
            """,
            (namespace, name, spec_json, utc_now()),
        )


def forget_assembly(namespace: str, name: str) -> None:
    with transaction() as conn:
        conn.execute("DELETE FROM assemblies WHERE namespace=? AND name=?", (namespace, name))


def list_assemblies(namespace: str | None = None) -> list[AssemblyRow]:
    with transaction() as conn:
        if namespace:
            rows = conn.execute(
                "SELECT * FROM assemblies WHERE namespace=? ORDER BY namespace, name", (namespace,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM assemblies ORDER BY namespace, name").fetchall()
        return [AssemblyRow(**dict(r)) for r in rows]


def latest_events(limit: int = 100, assembly: str | None = None) -> list[dict[str, Any]]:
    with transaction() as conn:
        if assembly:
            rows = conn.execute(
                "SELECT * FROM events WHERE assembly=? ORDER BY id DESC LIMIT ?", (assembly, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
