"""
sequencer.py — Timing event ingestion: validation, per-race sequence
allocation and elapsed-time calculation.

Sequence numbers come from the race_sequences counter row, incremented inside
the same BEGIN IMMEDIATE transaction that inserts the events. A rejected or
rolled-back submission therefore never consumes numbers, and two writers can
never receive overlapping ranges.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from racetiming.core import audit
from racetiming.core.actor import Actor, require_authorized
from racetiming.core.database import (
    get_start_checkpoint, require_race, transaction,
)
from racetiming.core.errors import ValidationError
from racetiming.core.notify import NULL_LISTENER, ResultsListener

logger = logging.getLogger("racetiming.timing")

MAX_SOURCE_LEN = 100
MAX_QUALIFIER_LEN = 50


@dataclass
class EventSpec:
    """One timing event as submitted by a device or operator."""
    participant_id: int
    checkpoint_id: Optional[int]
    time_ms: int
    registration_id: Optional[int] = None
    timing_session_id: Optional[int] = None
    device_ts: Optional[str] = None
    source: Optional[str] = None
    qualifier: Optional[str] = None


# ---------------------------------------------------------------------------
# Elapsed time
# ---------------------------------------------------------------------------

def find_start_event(conn: sqlite3.Connection, race_id: int, participant_id: int,
                     start_checkpoint_id: int) -> Optional[sqlite3.Row]:
    """Earliest non-deleted event of the participant at the start checkpoint."""
    return conn.execute(
        """SELECT * FROM timing_events
           WHERE race_id=? AND participant_id=? AND checkpoint_id=? AND deleted=0
           ORDER BY time_ms ASC, sequence ASC LIMIT 1""",
        (race_id, participant_id, start_checkpoint_id)
    ).fetchone()


def compute_elapsed(conn: sqlite3.Connection, race_id: int, participant_id: int,
                    checkpoint_id: Optional[int], time_ms: int) -> Optional[int]:
    """Milliseconds since the participant's start event, or None.

    0 for an event at the start checkpoint itself. None when the race has no
    start checkpoint or the participant has no (non-deleted) start event yet.
    """
    start_cp = get_start_checkpoint(conn, race_id)
    if start_cp is None:
        return None
    if checkpoint_id == start_cp["id"]:
        return 0
    start_event = find_start_event(conn, race_id, participant_id, start_cp["id"])
    if start_event is None:
        return None
    return time_ms - start_event["time_ms"]


def apply_elapsed(conn: sqlite3.Connection, race_id: int,
                  participant_id: int) -> list[tuple[sqlite3.Row, Optional[int]]]:
    """Recompute elapsed_ms for every non-deleted event of a participant.

    Walks events in ascending time order and writes the new values. Returns
    (old_row, new_elapsed) for each event processed.
    """
    rows = conn.execute(
        """SELECT * FROM timing_events
           WHERE race_id=? AND participant_id=? AND deleted=0
           ORDER BY time_ms ASC, sequence ASC""",
        (race_id, participant_id)
    ).fetchall()
    processed = []
    for row in rows:
        elapsed = compute_elapsed(conn, race_id, participant_id,
                                  row["checkpoint_id"], row["time_ms"])
        if elapsed != row["elapsed_ms"]:
            conn.execute("UPDATE timing_events SET elapsed_ms=? WHERE id=?",
                         (elapsed, row["id"]))
        processed.append((row, elapsed))
    return processed


# ---------------------------------------------------------------------------
# Sequence allocation
# ---------------------------------------------------------------------------

def allocate_sequences(conn: sqlite3.Connection, race_id: int, count: int) -> int:
    """Reserve `count` consecutive sequence numbers; returns the first one.

    Must run inside transaction(): the counter update holds the write lock
    until commit, and a rollback gives the numbers back.
    """
    if not conn.in_transaction:
        raise RuntimeError("allocate_sequences() needs an open transaction")
    if count < 1:
        raise ValueError("count must be >= 1")
    conn.execute(
        "INSERT OR IGNORE INTO race_sequences (race_id, last_sequence) VALUES (?, 0)",
        (race_id,)
    )
    conn.execute(
        "UPDATE race_sequences SET last_sequence = last_sequence + ? WHERE race_id=?",
        (count, race_id)
    )
    last = conn.execute(
        "SELECT last_sequence FROM race_sequences WHERE race_id=?", (race_id,)
    ).fetchone()["last_sequence"]
    return last - count + 1


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_event(conn: sqlite3.Connection, race_id: int, spec: EventSpec,
                   label: str = "Timing event") -> None:
    """Check that everything the event references belongs together."""
    if isinstance(spec.time_ms, bool) or not isinstance(spec.time_ms, int):
        raise ValidationError(f"{label}: time_ms must be an integer",
                              "TimingEvent", "time_ms")
    if spec.time_ms < 0:
        raise ValidationError(f"{label}: time_ms must not be negative",
                              "TimingEvent", "time_ms")

    participant = conn.execute(
        "SELECT race_id FROM participants WHERE id=?", (spec.participant_id,)
    ).fetchone()
    if participant is None or participant["race_id"] != race_id:
        raise ValidationError(
            f"{label}: participant {spec.participant_id} is not in race {race_id}",
            "Participant", "participant_id"
        )

    if spec.checkpoint_id is not None:
        cp = conn.execute(
            "SELECT race_id FROM checkpoints WHERE id=?", (spec.checkpoint_id,)
        ).fetchone()
        if cp is None or cp["race_id"] != race_id:
            raise ValidationError(
                f"{label}: checkpoint {spec.checkpoint_id} is not in race {race_id}",
                "Checkpoint", "checkpoint_id"
            )

    if spec.registration_id is not None:
        reg = conn.execute(
            "SELECT participant_id FROM registrations WHERE id=?",
            (spec.registration_id,)
        ).fetchone()
        if reg is None or reg["participant_id"] != spec.participant_id:
            raise ValidationError(
                f"{label}: registration {spec.registration_id} does not belong "
                f"to participant {spec.participant_id}",
                "Registration", "registration_id"
            )

    if spec.timing_session_id is not None:
        session = conn.execute(
            "SELECT race_id FROM timing_sessions WHERE id=?",
            (spec.timing_session_id,)
        ).fetchone()
        if session is None or session["race_id"] != race_id:
            raise ValidationError(
                f"{label}: timing session {spec.timing_session_id} is not in race {race_id}",
                "TimingSession", "timing_session_id"
            )

    if spec.source is not None and len(spec.source) > MAX_SOURCE_LEN:
        raise ValidationError(f"{label}: source longer than {MAX_SOURCE_LEN} characters",
                              "TimingEvent", "source")
    if spec.qualifier is not None and len(spec.qualifier) > MAX_QUALIFIER_LEN:
        raise ValidationError(
            f"{label}: qualifier longer than {MAX_QUALIFIER_LEN} characters",
            "TimingEvent", "qualifier"
        )


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def _insert_event(conn: sqlite3.Connection, race_id: int, spec: EventSpec,
                  sequence: int, elapsed_ms: Optional[int],
                  user_id: Optional[str]) -> int:
    cur = conn.execute(
        """INSERT INTO timing_events (race_id, participant_id, checkpoint_id,
           registration_id, timing_session_id, time_ms, device_ts, elapsed_ms,
           source, qualifier, sequence, created_by)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (race_id, spec.participant_id, spec.checkpoint_id, spec.registration_id,
         spec.timing_session_id, spec.time_ms, spec.device_ts, elapsed_ms,
         spec.source, spec.qualifier, sequence, user_id)
    )
    return cur.lastrowid


def _fetch_event(conn: sqlite3.Connection, event_id: int) -> dict:
    return dict(conn.execute(
        "SELECT * FROM timing_events WHERE id=?", (event_id,)
    ).fetchone())


def record_timing_event(conn: sqlite3.Connection, race_id: int, spec: EventSpec,
                        actor: Actor,
                        listener: Optional[ResultsListener] = None) -> dict:
    """Validate, sequence and store one timing event. Returns the stored row."""
    require_authorized(actor, race_id)
    with transaction(conn):
        require_race(conn, race_id)
        validate_event(conn, race_id, spec)
        elapsed = compute_elapsed(conn, race_id, spec.participant_id,
                                  spec.checkpoint_id, spec.time_ms)
        seq = allocate_sequences(conn, race_id, 1)
        event_id = _insert_event(conn, race_id, spec, seq, elapsed, actor.user_id)
        event = _fetch_event(conn, event_id)
        audit.record(conn, race_id, audit.TIMING_EVENT, event_id, audit.CREATE,
                     user_id=actor.user_id, after=event)

    logger.info("Race %d: event #%d seq=%d participant=%d checkpoint=%s elapsed=%s",
                race_id, event_id, seq, spec.participant_id,
                spec.checkpoint_id, elapsed)
    (listener or NULL_LISTENER).timing_events_recorded(race_id, [event])
    return event


def record_bulk_timing_events(conn: sqlite3.Connection, race_id: int,
                              specs: list[EventSpec], actor: Actor,
                              listener: Optional[ResultsListener] = None,
                              resolve_within_batch: bool = False) -> list[dict]:
    """Store a batch of events for one race, all or nothing.

    Every element is validated before anything is written. Sequence numbers
    form one contiguous block in submission order. Elapsed time is computed
    against already-committed events; with resolve_within_batch=True a second
    pass recalculates every participant touched by the batch, so a start and
    finish submitted together resolve each other.
    """
    require_authorized(actor, race_id)
    if not specs:
        raise ValidationError("No timing events given", "TimingEvent")

    with transaction(conn):
        require_race(conn, race_id)
        for i, spec in enumerate(specs):
            validate_event(conn, race_id, spec, label=f"Event {i + 1}")

        elapsed = [compute_elapsed(conn, race_id, s.participant_id,
                                   s.checkpoint_id, s.time_ms) for s in specs]

        first = allocate_sequences(conn, race_id, len(specs))
        ids = [
            _insert_event(conn, race_id, spec, first + offset, el, actor.user_id)
            for offset, (spec, el) in enumerate(zip(specs, elapsed))
        ]

        if resolve_within_batch:
            new_ids = set(ids)
            for pid in sorted({s.participant_id for s in specs}):
                for old, new_elapsed in apply_elapsed(conn, race_id, pid):
                    if old["id"] in new_ids or old["elapsed_ms"] == new_elapsed:
                        continue
                    after = dict(old)
                    after["elapsed_ms"] = new_elapsed
                    audit.record(conn, race_id, audit.TIMING_EVENT, old["id"],
                                 audit.UPDATE, user_id=actor.user_id,
                                 before=dict(old), after=after,
                                 reason="elapsed time resolved within batch")

        events = [_fetch_event(conn, eid) for eid in ids]
        for event in events:
            audit.record(conn, race_id, audit.TIMING_EVENT, event["id"],
                         audit.CREATE, user_id=actor.user_id, after=event)

    logger.info("Race %d: %d events recorded, seq %d-%d",
                race_id, len(events), first, first + len(events) - 1)
    (listener or NULL_LISTENER).timing_events_recorded(race_id, events)
    return events
