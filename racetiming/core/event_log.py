"""
event_log.py — Reading and correcting stored timing events.

Events are never physically removed. Soft delete flips `deleted`; the row,
its sequence number and its audit history stay.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, fields
from typing import Any, Optional

from racetiming.core import audit
from racetiming.core.actor import Actor, require_authorized
from racetiming.core.database import transaction
from racetiming.core.errors import InvalidStateError, NotFoundError, ValidationError
from racetiming.core.sequencer import (
    MAX_QUALIFIER_LEN, MAX_SOURCE_LEN, apply_elapsed, compute_elapsed,
)

logger = logging.getLogger("racetiming.timing")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class TimingEventUpdate:
    """Fields to change on a timing event. UNSET leaves a field as it is."""
    time_ms: Any = UNSET
    device_ts: Any = UNSET
    source: Any = UNSET
    qualifier: Any = UNSET

    def changes(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)
                if getattr(self, f.name) is not UNSET}


def _load(conn: sqlite3.Connection, event_id: int) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM timing_events WHERE id=?", (event_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"Timing event {event_id} not found", "TimingEvent")
    return row


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_timing_event(conn: sqlite3.Connection, event_id: int) -> dict:
    return dict(_load(conn, event_id))


def list_timing_events(conn: sqlite3.Connection, race_id: int,
                       participant_id: Optional[int] = None,
                       checkpoint_id: Optional[int] = None,
                       timing_session_id: Optional[int] = None,
                       include_deleted: bool = False) -> list[dict]:
    """Events of a race in sequence order."""
    sql = "SELECT * FROM timing_events WHERE race_id=?"
    params: list = [race_id]
    if participant_id is not None:
        sql += " AND participant_id=?"
        params.append(participant_id)
    if checkpoint_id is not None:
        sql += " AND checkpoint_id=?"
        params.append(checkpoint_id)
    if timing_session_id is not None:
        sql += " AND timing_session_id=?"
        params.append(timing_session_id)
    if not include_deleted:
        sql += " AND deleted=0"
    sql += " ORDER BY sequence"
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


def participant_times(conn: sqlite3.Connection, race_id: int,
                      participant_id: int) -> list[dict]:
    """Non-deleted events of one participant, in course order."""
    rows = conn.execute(
        """SELECT t.*, c.code AS checkpoint_code, c.name AS checkpoint_name,
                  c.order_index
           FROM timing_events t
           LEFT JOIN checkpoints c ON c.id = t.checkpoint_id
           WHERE t.race_id=? AND t.participant_id=? AND t.deleted=0
           ORDER BY c.order_index, t.time_ms""",
        (race_id, participant_id)
    ).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Soft delete / undo
# ---------------------------------------------------------------------------

def soft_delete_event(conn: sqlite3.Connection, event_id: int, actor: Actor,
                      reason: Optional[str] = None) -> dict:
    """Mark an event deleted. A second delete is refused."""
    with transaction(conn):
        before = _load(conn, event_id)
        require_authorized(actor, before["race_id"])
        if before["deleted"]:
            raise InvalidStateError(f"Timing event {event_id} is already deleted",
                                    "TimingEvent", "deleted")
        conn.execute("UPDATE timing_events SET deleted=1 WHERE id=?", (event_id,))
        after = get_timing_event(conn, event_id)
        audit.record(conn, before["race_id"], audit.TIMING_EVENT, event_id,
                     audit.DELETE, user_id=actor.user_id,
                     before=dict(before), after=after, reason=reason)
    logger.info("Race %d: event #%d (seq %d) deleted",
                before["race_id"], event_id, before["sequence"])
    return after


def undo_delete_event(conn: sqlite3.Connection, event_id: int, actor: Actor,
                      reason: Optional[str] = None) -> dict:
    """Restore a soft-deleted event."""
    with transaction(conn):
        before = _load(conn, event_id)
        require_authorized(actor, before["race_id"])
        if not before["deleted"]:
            raise InvalidStateError(f"Timing event {event_id} is not deleted",
                                    "TimingEvent", "deleted")
        conn.execute("UPDATE timing_events SET deleted=0 WHERE id=?", (event_id,))
        after = get_timing_event(conn, event_id)
        audit.record(conn, before["race_id"], audit.TIMING_EVENT, event_id,
                     audit.UNDO, user_id=actor.user_id,
                     before=dict(before), after=after, reason=reason)
    logger.info("Race %d: event #%d (seq %d) restored",
                before["race_id"], event_id, before["sequence"])
    return after


# ---------------------------------------------------------------------------
# Update / recalculation
# ---------------------------------------------------------------------------

def update_timing_event(conn: sqlite3.Connection, event_id: int,
                        update: TimingEventUpdate, actor: Actor,
                        reason: Optional[str] = None) -> dict:
    """Apply the set fields of `update`. A new time_ms recomputes elapsed_ms.

    The sequence number is never touched.
    """
    changes = update.changes()

    if "time_ms" in changes:
        t = changes["time_ms"]
        if isinstance(t, bool) or not isinstance(t, int) or t < 0:
            raise ValidationError("time_ms must be a non-negative integer",
                                  "TimingEvent", "time_ms")
    if changes.get("source") and len(changes["source"]) > MAX_SOURCE_LEN:
        raise ValidationError(f"source longer than {MAX_SOURCE_LEN} characters",
                              "TimingEvent", "source")
    if changes.get("qualifier") and len(changes["qualifier"]) > MAX_QUALIFIER_LEN:
        raise ValidationError(f"qualifier longer than {MAX_QUALIFIER_LEN} characters",
                              "TimingEvent", "qualifier")

    with transaction(conn):
        before = _load(conn, event_id)
        require_authorized(actor, before["race_id"])
        if not changes:
            return dict(before)

        if "time_ms" in changes and changes["time_ms"] != before["time_ms"]:
            changes["elapsed_ms"] = compute_elapsed(
                conn, before["race_id"], before["participant_id"],
                before["checkpoint_id"], changes["time_ms"]
            )

        sets = ", ".join(f"{k}=?" for k in changes)
        conn.execute(f"UPDATE timing_events SET {sets} WHERE id=?",
                     list(changes.values()) + [event_id])
        after = get_timing_event(conn, event_id)
        audit.record(conn, before["race_id"], audit.TIMING_EVENT, event_id,
                     audit.UPDATE, user_id=actor.user_id,
                     before=dict(before), after=after, reason=reason)

    logger.info("Race %d: event #%d updated (%s)", before["race_id"], event_id,
                ", ".join(sorted(changes)))
    return after


def recalculate_times(conn: sqlite3.Connection, race_id: int, participant_id: int,
                      actor: Actor) -> int:
    """Recompute elapsed_ms for all of a participant's non-deleted events.

    Used after a correction moves the start event. Only events whose value
    changed get an audit entry. Returns the number of events processed.
    """
    require_authorized(actor, race_id)
    with transaction(conn):
        processed = apply_elapsed(conn, race_id, participant_id)
        changed = 0
        for old, new_elapsed in processed:
            if old["elapsed_ms"] == new_elapsed:
                continue
            changed += 1
            after = dict(old)
            after["elapsed_ms"] = new_elapsed
            audit.record(conn, race_id, audit.TIMING_EVENT, old["id"],
                         audit.UPDATE, user_id=actor.user_id,
                         before=dict(old), after=after,
                         reason="elapsed time recalculated")
    logger.info("Race %d: participant %d elapsed recalculated (%d events, %d changed)",
                race_id, participant_id, len(processed), changed)
    return len(processed)
