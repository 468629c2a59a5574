from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "drc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              rollout_id TEXT,
              message TEXT NOT NULL
            );

            -- Append-only: rows are never updated or deleted.
            CREATE TABLE IF NOT EXISTS migrations (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              version TEXT NOT NULL,
              checksum TEXT NOT NULL,
              applied_at TEXT NOT NULL,
              success INTEGER NOT NULL,
              detail TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_migrations_applied
              ON migrations(version) WHERE success = 1;
            """
        )


def log_event(
    level: str,
    message: str,
    service_name: str | None = None,
    rollout_id: str | None = None,
) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, rollout_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, rollout_id, message),
        )


def latest_events(limit: int = 100, rollout_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if rollout_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE rollout_id=? ORDER BY id DESC LIMIT ?",
                (rollout_id, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class MigrationRow:
    id: int
    version: str
    checksum: str
    applied_at: str
    success: bool
    detail: str | None


def _to_migration(row: sqlite3.Row) -> MigrationRow:
    d = dict(row)
    d["success"] = bool(d["success"])
    return MigrationRow(**d)


def _rows_to_migrations(rows: Iterable[sqlite3.Row]) -> list[MigrationRow]:
    return [_to_migration(r) for r in rows]


def get_applied_migration(version: str) -> MigrationRow | None:
    """The successful record for a version slot, if any."""
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM migrations WHERE version=? AND success=1",
            (version,),
        ).fetchone()
        return _to_migration(row) if row else None


def insert_migration(version: str, checksum: str, success: bool, detail: str | None = None) -> MigrationRow | None:
    """Append a migration record.

    Returns None when a successful record for the slot already exists
    (another caller won the race); the caller re-reads and decides.
    """
    try:
        with connect() as conn:
            cur = conn.execute(
                "INSERT INTO migrations (version, checksum, applied_at, success, detail) VALUES (?, ?, ?, ?, ?)",
                (version, checksum, utc_now(), 1 if success else 0, detail),
            )
            row = conn.execute("SELECT * FROM migrations WHERE id=?", (cur.lastrowid,)).fetchone()
            return _to_migration(row)
    except sqlite3.IntegrityError:
        return None


def list_migrations(version: str | None = None) -> list[MigrationRow]:
    with connect() as conn:
        if version:
            rows = conn.execute("SELECT * FROM migrations WHERE version=? ORDER BY id", (version,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM migrations ORDER BY id").fetchall()
        return _rows_to_migrations(rows)
