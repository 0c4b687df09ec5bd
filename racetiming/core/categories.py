"""
categories.py — Age/gender categories and per-category places.

Category place and overall place share the `place` column; whichever ranking
ran last wins, and the caller decides which one a view shows.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import Optional

from racetiming.core import audit
from racetiming.core.actor import Actor, require_authorized
from racetiming.core.database import (
    get_participant, get_registration_for_participant, get_result, now_ts, transaction,
)
from racetiming.core.errors import InvalidStateError, NotFoundError, ValidationError
from racetiming.core.results_engine import DQ, patch_result, result_snapshot

logger = logging.getLogger("racetiming.categories")

OPEN = "Open"

# (upper age bound exclusive, label)
AGE_BANDS = [
    (18, "U18"),
    (30, "18-29"),
    (40, "30-39"),
    (50, "40-49"),
    (60, "50-59"),
]


def category_for(gender: Optional[str], birth_year: Optional[int],
                 year: Optional[int] = None) -> str:
    """e.g. ('f', 1990) in 2024 -> 'F 30-39'. Missing data -> 'Open'."""
    if not gender or not birth_year:
        return OPEN
    age = (year or date.today().year) - birth_year
    band = "60+"
    for limit, label in AGE_BANDS:
        if age < limit:
            band = label
            break
    return f"{gender.upper()} {band}"


def assign_all(conn: sqlite3.Connection, race_id: int, actor: Actor,
               year: Optional[int] = None) -> int:
    """Derive a category for every existing result entry of the race.

    Disqualified entries keep "DQ". Returns the number of entries assigned.
    """
    require_authorized(actor, race_id)
    count = 0
    with transaction(conn):
        rows = conn.execute(
            """SELECT rc.*, p.gender AS p_gender, p.birth_year AS p_birth_year
               FROM result_cache rc JOIN participants p ON p.id = rc.participant_id
               WHERE rc.race_id=? ORDER BY rc.participant_id""",
            (race_id,)
        ).fetchall()
        for row in rows:
            if row["category"] == DQ:
                continue
            category = category_for(row["p_gender"], row["p_birth_year"], year)
            count += 1
            if category != row["category"]:
                patch_result(conn, row, {"category": category}, actor,
                             reason="category assignment")
    logger.info("Race %d: categories assigned to %d entries", race_id, count)
    return count


def set_category(conn: sqlite3.Connection, race_id: int, participant_id: int,
                 category: str, actor: Actor,
                 reason: Optional[str] = None) -> dict:
    """Manually set one participant's category.

    Creates an empty placeholder entry when the participant has no result yet.
    """
    require_authorized(actor, race_id)
    if not category:
        raise ValidationError("Category must not be empty", "ResultCache", "category")
    if category == DQ:
        raise ValidationError("Use disqualify to set DQ", "ResultCache", "category")
    with transaction(conn):
        participant = get_participant(conn, participant_id)
        if participant is None:
            raise NotFoundError(f"Participant {participant_id} not found", "Participant")
        if participant["race_id"] != race_id:
            raise ValidationError(
                f"Participant {participant_id} is not in race {race_id}",
                "Participant", "participant_id"
            )
        row = get_result(conn, race_id, participant_id)
        if row is not None:
            if row["category"] == DQ:
                raise InvalidStateError(
                    f"Participant {participant_id} is disqualified; use reinstate",
                    "ResultCache", "category"
                )
            return patch_result(conn, row, {"category": category}, actor,
                                reason=reason or "manual category")

        reg = get_registration_for_participant(conn, participant_id)
        cur = conn.execute(
            """INSERT INTO result_cache (race_id, participant_id, registration_id,
               category, version, updated_at)
               VALUES (?, ?, ?, ?, 1, ?)""",
            (race_id, participant_id, reg["id"] if reg else None, category, now_ts())
        )
        new_row = conn.execute("SELECT * FROM result_cache WHERE id=?",
                               (cur.lastrowid,)).fetchone()
        audit.record(conn, race_id, audit.RESULT, cur.lastrowid, audit.CREATE,
                     user_id=actor.user_id, after=result_snapshot(new_row),
                     reason=reason or "manual category")
        return dict(new_row)


def recalculate_category_places(conn: sqlite3.Connection, race_id: int,
                                category: str, actor: Actor) -> int:
    """Re-rank one category by chip time. Returns the number of entries placed."""
    require_authorized(actor, race_id)
    if category == DQ:
        raise ValidationError("Disqualified entries are not ranked",
                              "ResultCache", "category")
    with transaction(conn):
        rows = conn.execute(
            """SELECT * FROM result_cache
               WHERE race_id=? AND category=? AND chip_time_ms IS NOT NULL
               ORDER BY chip_time_ms ASC, participant_id ASC""",
            (race_id, category)
        ).fetchall()
        for i, row in enumerate(rows):
            if row["place"] != i + 1:
                patch_result(conn, row, {"place": i + 1}, actor,
                             reason=f"category places: {category}")
    logger.info("Race %d: %d entries placed in %s", race_id, len(rows), category)
    return len(rows)
