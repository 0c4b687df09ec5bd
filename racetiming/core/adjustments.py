"""
adjustments.py — Manual corrections on top of computed results: time
adjustments, penalties, disqualification, reinstatement and revocation.

Time adjustments are kept as rows in result_adjustments and applied to the
cached chip/net time at once; recompute() re-applies all non-voided rows, so
they survive a rebuild. Gun time is never adjusted.

Every write is a read-modify-write of one result_cache row under its version
number (see results_engine.patch_result): two concurrent corrections to the
same entry cannot silently overwrite each other.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from racetiming.core import audit
from racetiming.core.actor import Actor, require_authorized
from racetiming.core.database import get_result, now_ts, transaction
from racetiming.core.errors import InvalidStateError, NotFoundError, ValidationError
from racetiming.core.results_engine import DQ, patch_result

logger = logging.getLogger("racetiming.adjust")

DEFAULT_REINSTATE_CATEGORY = "Open"


def _require_reason(reason: Optional[str]) -> str:
    if not reason or not reason.strip():
        raise ValidationError("A reason is required", "ResultCache", "reason")
    return reason.strip()


def _load_result(conn: sqlite3.Connection, race_id: int,
                 participant_id: int) -> sqlite3.Row:
    row = get_result(conn, race_id, participant_id)
    if row is None:
        raise NotFoundError(
            f"No result for participant {participant_id} in race {race_id}",
            "ResultCache"
        )
    return row


def _apply_delta(conn: sqlite3.Connection, race_id: int, participant_id: int,
                 delta_ms: int, kind: str, reason: str, actor: Actor,
                 expected_version: Optional[int]) -> dict:
    row = _load_result(conn, race_id, participant_id)
    if row["chip_time_ms"] is None:
        raise InvalidStateError(
            f"Participant {participant_id} has no chip time to adjust",
            "ResultCache", "chip_time_ms"
        )
    cur = conn.execute(
        """INSERT INTO result_adjustments (race_id, participant_id, kind,
           adjustment_ms, reason, user_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (race_id, participant_id, kind, delta_ms, reason, actor.user_id, now_ts())
    )
    net = row["net_time_ms"] if row["net_time_ms"] is not None else row["chip_time_ms"]
    result = patch_result(
        conn, row,
        {"chip_time_ms": row["chip_time_ms"] + delta_ms,
         "net_time_ms": net + delta_ms},
        actor, reason=reason, expected_version=expected_version,
    )
    result["adjustment_id"] = cur.lastrowid
    return result


def adjust_time(conn: sqlite3.Connection, race_id: int, participant_id: int,
                adjustment_ms: int, reason: str, actor: Actor,
                expected_version: Optional[int] = None) -> dict:
    """Add a signed number of milliseconds to chip and net time."""
    require_authorized(actor, race_id)
    reason = _require_reason(reason)
    if isinstance(adjustment_ms, bool) or not isinstance(adjustment_ms, int):
        raise ValidationError("adjustment_ms must be an integer",
                              "ResultCache", "adjustment_ms")
    with transaction(conn):
        result = _apply_delta(conn, race_id, participant_id, adjustment_ms,
                              "adjustment", reason, actor, expected_version)
    logger.info("Race %d: participant %d adjusted by %+d ms (%s)",
                race_id, participant_id, adjustment_ms, reason)
    return result


def add_penalty(conn: sqlite3.Connection, race_id: int, participant_id: int,
                penalty_seconds: int, reason: str, actor: Actor,
                expected_version: Optional[int] = None) -> dict:
    """Add a time penalty (positive whole seconds)."""
    require_authorized(actor, race_id)
    reason = _require_reason(reason)
    if (isinstance(penalty_seconds, bool) or not isinstance(penalty_seconds, int)
            or penalty_seconds <= 0):
        raise ValidationError("Penalty must be a positive number of seconds",
                              "ResultCache", "penalty_seconds")
    with transaction(conn):
        result = _apply_delta(conn, race_id, participant_id, penalty_seconds * 1000,
                              "penalty", f"PENALTY {penalty_seconds}s: {reason}",
                              actor, expected_version)
    logger.info("Race %d: participant %d penalty %ds (%s)",
                race_id, participant_id, penalty_seconds, reason)
    return result


def disqualify(conn: sqlite3.Connection, race_id: int, participant_id: int,
               reason: str, actor: Actor,
               expected_version: Optional[int] = None) -> dict:
    """Set category DQ and clear the place. Times are kept."""
    require_authorized(actor, race_id)
    reason = _require_reason(reason)
    with transaction(conn):
        row = _load_result(conn, race_id, participant_id)
        if row["category"] == DQ:
            raise InvalidStateError(f"Participant {participant_id} is already disqualified",
                                    "ResultCache", "category")
        result = patch_result(conn, row, {"category": DQ, "place": None}, actor,
                              reason=f"DISQUALIFIED: {reason}",
                              expected_version=expected_version)
    logger.info("Race %d: participant %d disqualified (%s)",
                race_id, participant_id, reason)
    return result


def reinstate(conn: sqlite3.Connection, race_id: int, participant_id: int,
              actor: Actor, category: Optional[str] = None,
              reason: Optional[str] = None,
              expected_version: Optional[int] = None) -> dict:
    """Lift a disqualification.

    Category becomes `category` (default "Open"). Place stays empty until the
    next recompute or category recalculation.
    """
    require_authorized(actor, race_id)
    new_category = category or DEFAULT_REINSTATE_CATEGORY
    if new_category == DQ:
        raise ValidationError("Cannot reinstate into DQ", "ResultCache", "category")
    with transaction(conn):
        row = _load_result(conn, race_id, participant_id)
        if row["category"] != DQ:
            raise InvalidStateError("Participant is not disqualified",
                                    "ResultCache", "category")
        result = patch_result(conn, row, {"category": new_category, "place": None},
                              actor, reason=f"REINSTATED: {reason or new_category}",
                              expected_version=expected_version)
    logger.info("Race %d: participant %d reinstated as %s",
                race_id, participant_id, new_category)
    return result


def revoke_adjustment(conn: sqlite3.Connection, race_id: int, adjustment_id: int,
                      reason: str, actor: Actor) -> dict:
    """Void one time adjustment or penalty and take it off chip/net time."""
    require_authorized(actor, race_id)
    reason = _require_reason(reason)
    with transaction(conn):
        adj = conn.execute("SELECT * FROM result_adjustments WHERE id=?",
                           (adjustment_id,)).fetchone()
        if adj is None or adj["race_id"] != race_id:
            raise NotFoundError(f"Adjustment {adjustment_id} not found in race {race_id}",
                                "ResultAdjustment")
        if adj["voided"]:
            raise InvalidStateError(f"Adjustment {adjustment_id} is already revoked",
                                    "ResultAdjustment", "voided")
        conn.execute(
            "UPDATE result_adjustments SET voided=1, voided_at=? WHERE id=?",
            (now_ts(), adjustment_id)
        )
        row = _load_result(conn, adj["race_id"], adj["participant_id"])
        changes = {}
        if row["chip_time_ms"] is not None:
            changes["chip_time_ms"] = row["chip_time_ms"] - adj["adjustment_ms"]
        if row["net_time_ms"] is not None:
            changes["net_time_ms"] = row["net_time_ms"] - adj["adjustment_ms"]
        result = patch_result(conn, row, changes or {"category": row["category"]},
                              actor, reason=f"REVOKED #{adjustment_id}: {reason}",
                              action=audit.UNDO)
    logger.info("Race %d: adjustment #%d revoked (%s)",
                adj["race_id"], adjustment_id, reason)
    return result


def list_adjustments(conn: sqlite3.Connection, race_id: int,
                     participant_id: Optional[int] = None,
                     include_voided: bool = True) -> list[dict]:
    sql = "SELECT * FROM result_adjustments WHERE race_id=?"
    params: list = [race_id]
    if participant_id is not None:
        sql += " AND participant_id=?"
        params.append(participant_id)
    if not include_voided:
        sql += " AND voided=0"
    sql += " ORDER BY id"
    return [dict(r) for r in conn.execute(sql, params).fetchall()]
