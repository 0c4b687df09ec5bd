"""
results_engine.py — Gun/chip/net times, rankings and the result cache.

recompute() rebuilds the whole result_cache for a race in one transaction:
readers (WAL snapshots) see either the old complete set or the new one.
Manual adjustments live in result_adjustments and are re-applied on top of
the raw times every time, so a recompute never loses them.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from racetiming.core import audit
from racetiming.core.actor import Actor, require_authorized
from racetiming.core.database import (
    get_finish_checkpoint, get_participants, get_start_checkpoint, now_ts,
    require_race, transaction,
)
from racetiming.core.errors import ConflictError, ValidationError
from racetiming.core.notify import NULL_LISTENER, ResultsListener
from racetiming.core.sequencer import find_start_event

logger = logging.getLogger("racetiming.results")

DQ = "DQ"

SNAPSHOT_FIELDS = ("gun_time_ms", "chip_time_ms", "net_time_ms", "place",
                   "category", "registration_id")


def format_time_ms(ms: Optional[int]) -> str:
    """Format milliseconds as HH:MM:SS.mmm ("" for None)."""
    if ms is None:
        return ""
    sign = "-" if ms < 0 else ""
    ms = abs(int(ms))
    hours, rem = divmod(ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def result_snapshot(row) -> dict:
    """The audited part of a result entry."""
    snap = {k: row[k] for k in SNAPSHOT_FIELDS}
    snap["version"] = row["version"]
    return snap


def overlay_totals(conn: sqlite3.Connection, race_id: int) -> dict[int, int]:
    """Sum of active (non-voided) adjustments per participant, in ms."""
    rows = conn.execute(
        """SELECT participant_id, SUM(adjustment_ms) AS total
           FROM result_adjustments
           WHERE race_id=? AND voided=0
           GROUP BY participant_id""",
        (race_id,)
    ).fetchall()
    return {r["participant_id"]: r["total"] for r in rows}


def _earliest_event(conn: sqlite3.Connection, race_id: int, participant_id: int,
                    checkpoint_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        """SELECT * FROM timing_events
           WHERE race_id=? AND participant_id=? AND checkpoint_id=? AND deleted=0
           ORDER BY time_ms ASC, sequence ASC LIMIT 1""",
        (race_id, participant_id, checkpoint_id)
    ).fetchone()


def _raw_times(conn: sqlite3.Connection, race_id: int, participant_id: int,
               start_cp_id: int, finish_cp_id: int) -> tuple:
    """(gun, chip) from the event log alone; (None, None) without a finish."""
    finish = _earliest_event(conn, race_id, participant_id, finish_cp_id)
    if finish is None:
        return None, None
    gun = finish["elapsed_ms"]
    start = find_start_event(conn, race_id, participant_id, start_cp_id)
    if start is not None:
        chip = finish["time_ms"] - start["time_ms"]
    else:
        chip = gun
    return gun, chip


def rank_entries(entries: list[dict]) -> None:
    """Set place 1..n over ranked entries, None for the rest.

    Ranked: non-null chip time and not disqualified. Ties go to the earlier
    created participant (lower id).
    """
    ranked = sorted(
        (e for e in entries if e["chip_time_ms"] is not None and e["category"] != DQ),
        key=lambda e: (e["chip_time_ms"], e["participant_id"])
    )
    for e in entries:
        e["place"] = None
    for i, e in enumerate(ranked):
        e["place"] = i + 1


def recompute(conn: sqlite3.Connection, race_id: int, actor: Actor,
              listener: Optional[ResultsListener] = None) -> int:
    """Rebuild result_cache for a race from the event log.

    Returns the number of entries in the new set. One audit entry is written
    per result whose state changed.
    """
    require_authorized(actor, race_id)

    with transaction(conn):
        require_race(conn, race_id)
        start_cp = get_start_checkpoint(conn, race_id)
        finish_cp = get_finish_checkpoint(conn, race_id)
        if start_cp is None:
            raise ValidationError(f"Race {race_id} has no start checkpoint",
                                  "Checkpoint", "is_start")
        if finish_cp is None:
            raise ValidationError(f"Race {race_id} has no finish checkpoint",
                                  "Checkpoint", "is_finish")

        # 1. Snapshot current results
        old = {
            r["participant_id"]: r
            for r in conn.execute(
                "SELECT * FROM result_cache WHERE race_id=?", (race_id,)
            ).fetchall()
        }
        overlay = overlay_totals(conn, race_id)
        registrations = {
            r["participant_id"]: r["id"]
            for r in conn.execute(
                """SELECT MIN(r.id) AS id, r.participant_id FROM registrations r
                   JOIN participants p ON p.id = r.participant_id
                   WHERE p.race_id=? GROUP BY r.participant_id""",
                (race_id,)
            ).fetchall()
        }

        # 2. Derive new entries
        entries = []
        for p in get_participants(conn, race_id):
            pid = p["id"]
            gun, chip = _raw_times(conn, race_id, pid, start_cp["id"], finish_cp["id"])
            if chip is not None:
                chip += overlay.get(pid, 0)
            prev = old.get(pid)
            entries.append({
                "participant_id": pid,
                "registration_id": registrations.get(pid),
                "gun_time_ms": gun,
                "chip_time_ms": chip,
                "net_time_ms": chip,
                "category": prev["category"] if prev else None,
            })
        rank_entries(entries)

        # 3. Swap
        ts = now_ts()
        conn.execute("DELETE FROM result_cache WHERE race_id=?", (race_id,))
        diffs = []
        for e in entries:
            prev = old.get(e["participant_id"])
            changed = prev is None or any(prev[k] != e[k] for k in SNAPSHOT_FIELDS)
            if prev is None:
                version = 1
            else:
                version = prev["version"] + 1 if changed else prev["version"]
            cur = conn.execute(
                """INSERT INTO result_cache (id, race_id, participant_id,
                   registration_id, gun_time_ms, chip_time_ms, net_time_ms,
                   place, category, version, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (prev["id"] if prev else None, race_id, e["participant_id"],
                 e["registration_id"], e["gun_time_ms"], e["chip_time_ms"],
                 e["net_time_ms"], e["place"], e["category"], version,
                 ts if changed else prev["updated_at"])
            )
            if not changed:
                continue
            after = {k: e[k] for k in SNAPSHOT_FIELDS}
            after["version"] = version
            if prev is None:
                audit.record(conn, race_id, audit.RESULT, cur.lastrowid, audit.CREATE,
                             user_id=actor.user_id, after=after, reason="recompute")
            else:
                before = result_snapshot(prev)
                audit.record(conn, race_id, audit.RESULT, prev["id"], audit.UPDATE,
                             user_id=actor.user_id, before=before, after=after,
                             reason="recompute")
                diffs.append(
                    f"Participant {e['participant_id']}: "
                    f"chip {format_time_ms(prev['chip_time_ms'])} -> "
                    f"{format_time_ms(e['chip_time_ms'])}, "
                    f"place {prev['place']} -> {e['place']}"
                )

    for d in diffs:
        logger.warning("Recompute diff: %s", d)
    logger.info("Race %d: recomputed %d results (%d ranked)", race_id, len(entries),
                sum(1 for e in entries if e["place"] is not None))
    (listener or NULL_LISTENER).results_recomputed(race_id, len(entries))
    return len(entries)


# ---------------------------------------------------------------------------
# Leaderboard queries
# ---------------------------------------------------------------------------

_RESULT_SELECT = """
    SELECT rc.*, p.first_name, p.last_name, p.gender, p.birth_year, p.country,
           reg.bib
    FROM result_cache rc
    JOIN participants p ON p.id = rc.participant_id
    LEFT JOIN registrations reg ON reg.id = rc.registration_id
"""


def results(conn: sqlite3.Connection, race_id: int,
            category: Optional[str] = None) -> list[dict]:
    """All entries, placed ones first by place, then unplaced by chip time."""
    sql = _RESULT_SELECT + " WHERE rc.race_id=?"
    params: list = [race_id]
    if category:
        sql += " AND rc.category=?"
        params.append(category)
    sql += """ ORDER BY rc.place IS NULL, rc.place,
               rc.chip_time_ms IS NULL, rc.chip_time_ms, rc.participant_id"""
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


def leaderboard(conn: sqlite3.Connection, race_id: int,
                category: Optional[str] = None, limit: int = 100) -> list[dict]:
    """Finishers only, by place."""
    sql = _RESULT_SELECT + " WHERE rc.race_id=? AND rc.chip_time_ms IS NOT NULL"
    params: list = [race_id]
    if category:
        sql += " AND rc.category=?"
        params.append(category)
    sql += " ORDER BY rc.place IS NULL, rc.place, rc.chip_time_ms LIMIT ?"
    params.append(limit)
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


def participant_result(conn: sqlite3.Connection, race_id: int,
                       participant_id: int) -> Optional[dict]:
    row = conn.execute(
        _RESULT_SELECT + " WHERE rc.race_id=? AND rc.participant_id=?",
        (race_id, participant_id)
    ).fetchone()
    return dict(row) if row else None


def categories_in_race(conn: sqlite3.Connection, race_id: int) -> list[str]:
    rows = conn.execute(
        """SELECT DISTINCT category FROM result_cache
           WHERE race_id=? AND category IS NOT NULL ORDER BY category""",
        (race_id,)
    ).fetchall()
    return [r["category"] for r in rows]


def gender_results(conn: sqlite3.Connection, race_id: int, gender: str) -> list[dict]:
    rows = conn.execute(
        _RESULT_SELECT + """ WHERE rc.race_id=? AND UPPER(p.gender)=UPPER(?)
                             AND rc.chip_time_ms IS NOT NULL
                             ORDER BY rc.chip_time_ms, rc.participant_id""",
        (race_id, gender)
    ).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Single-entry patches (categories, adjustments)
# ---------------------------------------------------------------------------

def patch_result(conn: sqlite3.Connection, row: sqlite3.Row, changes: dict,
                 actor: Actor, reason: Optional[str] = None,
                 expected_version: Optional[int] = None,
                 action: str = audit.UPDATE) -> dict:
    """Update one result entry under its version check and audit it.

    `row` is the entry as read in the current transaction. The write only
    lands if the stored version still matches (and matches expected_version
    when the caller supplied one); otherwise ConflictError.
    """
    version = row["version"]
    if expected_version is not None and expected_version != version:
        raise ConflictError(
            f"Result {row['id']} is at version {version}, expected {expected_version}",
            "ResultCache", "version"
        )
    sets = ", ".join(f"{k}=?" for k in changes)
    cur = conn.execute(
        f"""UPDATE result_cache SET {sets}, version=version+1, updated_at=?
            WHERE id=? AND version=?""",
        list(changes.values()) + [now_ts(), row["id"], version]
    )
    if cur.rowcount == 0:
        raise ConflictError(f"Result {row['id']} was changed concurrently",
                            "ResultCache", "version")
    new_row = conn.execute("SELECT * FROM result_cache WHERE id=?",
                           (row["id"],)).fetchone()
    audit.record(conn, row["race_id"], audit.RESULT, row["id"], action,
                 user_id=actor.user_id, before=result_snapshot(row),
                 after=result_snapshot(new_row), reason=reason)
    return dict(new_row)
