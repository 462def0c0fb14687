from __future__ import annotations

import json
import os
import sqlite3
import uuid
from typing import Any

from .models import DesiredUnit, Scope, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "cdr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def new_id() -> str:
    return uuid.uuid4().hex


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS scopes (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              slug TEXT NOT NULL UNIQUE,
              upstream_id TEXT,
              created_at TEXT NOT NULL,
              FOREIGN KEY(upstream_id) REFERENCES scopes(id)
            );

            CREATE TABLE IF NOT EXISTS units (
              id TEXT PRIMARY KEY,
              slug TEXT NOT NULL,
              scope_id TEXT NOT NULL,
              data TEXT NOT NULL,   -- JSON document
              labels TEXT NOT NULL, -- JSON object
              upstream_unit_id TEXT,
              revision INTEGER NOT NULL DEFAULT 1,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(scope_id, slug),
              FOREIGN KEY(scope_id) REFERENCES scopes(id) ON DELETE CASCADE,
              FOREIGN KEY(upstream_unit_id) REFERENCES units(id)
            );

            CREATE TABLE IF NOT EXISTS unit_sets (
              id TEXT PRIMARY KEY,
              scope_id TEXT NOT NULL,
              slug TEXT NOT NULL,
              created_at TEXT NOT NULL,
              UNIQUE(scope_id, slug),
              FOREIGN KEY(scope_id) REFERENCES scopes(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS set_members (
              set_id TEXT NOT NULL,
              unit_id TEXT NOT NULL,
              PRIMARY KEY(set_id, unit_id),
              FOREIGN KEY(set_id) REFERENCES unit_sets(id) ON DELETE CASCADE,
              FOREIGN KEY(unit_id) REFERENCES units(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              scope TEXT,
              unit TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reports (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              trigger TEXT NOT NULL,
              drift_count INTEGER NOT NULL,
              corrections_applied INTEGER NOT NULL,
              body TEXT NOT NULL -- JSON CycleReport
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_units_scope_id ON units(scope_id);
            CREATE INDEX IF NOT EXISTS idx_units_upstream ON units(upstream_unit_id);
            """
        )


def log_event(level: str, message: str, scope: str | None = None, unit: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, scope, unit, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), scope, unit, message),
        )


def latest_events(limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if level:
            rows = conn.execute(
                "SELECT * FROM events WHERE level=? ORDER BY id DESC LIMIT ?", (level.upper(), limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


# --- scopes ---

def _scope(row: sqlite3.Row) -> Scope:
    return Scope(id=row["id"], slug=row["slug"], upstream_id=row["upstream_id"], created_seq=row["seq"])


def insert_scope(slug: str, upstream_id: str | None = None) -> Scope:
    sid = new_id()
    with connect() as conn:
        conn.execute(
            "INSERT INTO scopes (id, slug, upstream_id, created_at) VALUES (?, ?, ?, ?)",
            (sid, slug, upstream_id, utc_now()),
        )
        row = conn.execute("SELECT * FROM scopes WHERE id=?", (sid,)).fetchone()
        return _scope(row)


def get_scope(id_or_slug: str) -> Scope | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM scopes WHERE id=? OR slug=?", (id_or_slug, id_or_slug)).fetchone()
        return _scope(row) if row else None


def list_scopes() -> list[Scope]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM scopes ORDER BY seq").fetchall()
        return [_scope(r) for r in rows]


# --- units ---

def _unit(conn: sqlite3.Connection, row: sqlite3.Row) -> DesiredUnit:
    set_ids = tuple(
        r["set_id"]
        for r in conn.execute("SELECT set_id FROM set_members WHERE unit_id=? ORDER BY set_id", (row["id"],))
    )
    return DesiredUnit(
        id=row["id"],
        slug=row["slug"],
        scope_id=row["scope_id"],
        data=json.loads(row["data"]),
        labels=json.loads(row["labels"]),
        upstream_unit_id=row["upstream_unit_id"],
        set_ids=set_ids,
        revision=row["revision"],
    )


def insert_unit(
    scope_id: str,
    slug: str,
    data: dict[str, Any],
    labels: dict[str, str] | None = None,
    upstream_unit_id: str | None = None,
) -> DesiredUnit:
    uid = new_id()
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO units (id, slug, scope_id, data, labels, upstream_unit_id, revision, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (uid, slug, scope_id, json.dumps(data), json.dumps(labels or {}), upstream_unit_id, now, now),
        )
        row = conn.execute("SELECT * FROM units WHERE id=?", (uid,)).fetchone()
        return _unit(conn, row)


def get_unit(unit_id: str) -> DesiredUnit | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM units WHERE id=?", (unit_id,)).fetchone()
        return _unit(conn, row) if row else None


def list_units(scope_id: str | None = None) -> list[DesiredUnit]:
    with connect() as conn:
        if scope_id:
            rows = conn.execute("SELECT * FROM units WHERE scope_id=? ORDER BY slug", (scope_id,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM units ORDER BY scope_id, slug").fetchall()
        return [_unit(conn, r) for r in rows]


def update_unit_data(unit_id: str, data: dict[str, Any], expected_revision: int | None = None) -> int | None:
    """Store a new document. Returns the new revision, or None when `expected_revision` is stale."""
    with connect() as conn:
        if expected_revision is None:
            cur = conn.execute(
                "UPDATE units SET data=?, revision=revision+1, updated_at=? WHERE id=?",
                (json.dumps(data), utc_now(), unit_id),
            )
        else:
            cur = conn.execute(
                "UPDATE units SET data=?, revision=revision+1, updated_at=? WHERE id=? AND revision=?",
                (json.dumps(data), utc_now(), unit_id, expected_revision),
            )
        if cur.rowcount == 0:
            return None
        row = conn.execute("SELECT revision FROM units WHERE id=?", (unit_id,)).fetchone()
        return int(row["revision"])


# --- sets ---

def insert_set(scope_id: str, slug: str) -> str:
    sid = new_id()
    with connect() as conn:
        conn.execute(
            "INSERT INTO unit_sets (id, scope_id, slug, created_at) VALUES (?, ?, ?, ?)",
            (sid, scope_id, slug, utc_now()),
        )
    return sid


def find_set(scope_id: str, id_or_slug: str) -> str | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT id FROM unit_sets WHERE scope_id=? AND (id=? OR slug=?)", (scope_id, id_or_slug, id_or_slug)
        ).fetchone()
        return row["id"] if row else None


def add_set_member(set_id: str, unit_id: str) -> None:
    with connect() as conn:
        conn.execute("INSERT OR IGNORE INTO set_members (set_id, unit_id) VALUES (?, ?)", (set_id, unit_id))


# --- reports ---

def save_report(report: dict[str, Any]) -> int:
    with connect() as conn:
        cur = conn.execute(
            "INSERT INTO reports (ts, trigger, drift_count, corrections_applied, body) VALUES (?, ?, ?, ?, ?)",
            (
                report["timestamp"],
                report.get("trigger", ""),
                int(report["drift_count"]),
                int(report["corrections_applied"]),
                json.dumps(report),
            ),
        )
        return int(cur.lastrowid)


def latest_reports(limit: int = 20) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT id, body FROM reports ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [{"id": r["id"], **json.loads(r["body"])} for r in rows]
