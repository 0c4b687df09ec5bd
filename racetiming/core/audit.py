"""
audit.py — Append-only audit trail for timing events and results.

Entries are written inside the caller's transaction so a mutation and its
audit row commit (or roll back) together. Nothing here updates or deletes
an existing entry.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Optional

from racetiming.core.database import now_ts

CREATE = "CREATE"
UPDATE = "UPDATE"
DELETE = "DELETE"
UNDO = "UNDO"
ACTIONS = (CREATE, UPDATE, DELETE, UNDO)

TIMING_EVENT = "TimingEvent"
RESULT = "ResultCache"


def record(conn: sqlite3.Connection, race_id: Optional[int], entity_type: str,
           entity_id: Optional[int], action: str,
           user_id: Optional[str] = None,
           before: Optional[dict] = None, after: Optional[dict] = None,
           reason: Optional[str] = None) -> int:
    """Append one audit entry. Snapshots are stored as JSON."""
    if action not in ACTIONS:
        raise ValueError(f"Unknown audit action {action!r}")
    cur = conn.execute(
        """INSERT INTO audit_log (race_id, entity_type, entity_id, action,
           user_id, before_val, after_val, reason, ts)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (race_id, entity_type, entity_id, action, user_id,
         json.dumps(before) if before is not None else None,
         json.dumps(after) if after is not None else None,
         reason, now_ts())
    )
    return cur.lastrowid


def _entry(row: sqlite3.Row) -> dict:
    d = dict(row)
    before, after = d.pop("before_val"), d.pop("after_val")
    d["before"] = json.loads(before) if before else None
    d["after"] = json.loads(after) if after else None
    return d


def history(conn: sqlite3.Connection, entity_type: str,
            entity_id: int) -> list[dict]:
    """All entries for one entity, newest first."""
    rows = conn.execute(
        """SELECT * FROM audit_log WHERE entity_type=? AND entity_id=?
           ORDER BY id DESC""",
        (entity_type, entity_id)
    ).fetchall()
    return [_entry(r) for r in rows]


def list_for_race(conn: sqlite3.Connection, race_id: int,
                  entity_type: Optional[str] = None,
                  action: Optional[str] = None,
                  user_id: Optional[str] = None,
                  limit: int = 100) -> list[dict]:
    """Audit entries for a race, newest first, optionally filtered."""
    sql = "SELECT * FROM audit_log WHERE race_id=?"
    params: list = [race_id]
    if entity_type:
        sql += " AND entity_type=?"
        params.append(entity_type)
    if action:
        sql += " AND action=?"
        params.append(action)
    if user_id:
        sql += " AND user_id=?"
        params.append(user_id)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    return [_entry(r) for r in conn.execute(sql, params).fetchall()]
