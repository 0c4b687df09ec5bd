"""
exchange.py — CSV import/export of participants and results.

Participants: firstName,lastName,gender,birthYear,country,bib
Results:      place,bib,firstName,lastName,category,gunTime,chipTime,netTime
Times in exported results are seconds (milliseconds / 1000).
"""

from __future__ import annotations

import csv
import io
import logging
import sqlite3
from datetime import date

from racetiming.core.actor import Actor, require_authorized
from racetiming.core.database import (
    create_participant, create_registration, require_race, transaction,
)
from racetiming.core.results_engine import results

logger = logging.getLogger("racetiming.exchange")

PARTICIPANT_COLUMNS = ["firstName", "lastName", "gender", "birthYear", "country", "bib"]
RESULT_COLUMNS = ["place", "bib", "firstName", "lastName", "category",
                  "gunTime", "chipTime", "netTime"]

# lowercased header -> field
_HEADER_ALIASES = {
    "firstname": "first_name", "first_name": "first_name",
    "lastname": "last_name", "last_name": "last_name",
    "gender": "gender",
    "birthyear": "birth_year", "birth_year": "birth_year",
    "country": "country",
    "bib": "bib",
}


def import_participants_csv(conn: sqlite3.Connection, race_id: int, text: str,
                            actor: Actor) -> tuple[int, list[str]]:
    """Import participants (and a registration when a bib is given).

    Returns (count_imported, list of warnings). Rows without a name or with
    an unreadable birth year are skipped with a warning.
    """
    require_authorized(actor, race_id)
    warnings = []
    count = 0

    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    header = next(reader, None)
    if not header:
        return 0, ["Empty file"]
    columns = [_HEADER_ALIASES.get(h.strip().lower()) for h in header]

    with transaction(conn):
        require_race(conn, race_id)
        for i, raw in enumerate(reader, start=2):
            if not raw or not any(v.strip() for v in raw):
                continue
            row = {col: raw[j].strip() for j, col in enumerate(columns)
                   if col and j < len(raw)}
            if not row.get("first_name") or not row.get("last_name"):
                warnings.append(f"Row {i}: missing first or last name")
                continue

            birth_year = None
            if row.get("birth_year"):
                try:
                    birth_year = int(row["birth_year"])
                except ValueError:
                    warnings.append(f"Row {i}: invalid birth year '{row['birth_year']}'")
                    continue
                if not 1900 <= birth_year <= date.today().year:
                    warnings.append(f"Row {i}: invalid birth year {birth_year}")
                    continue

            pid = create_participant(
                conn, race_id, row["first_name"], row["last_name"],
                gender=row.get("gender") or None, birth_year=birth_year,
                country=row.get("country") or None,
            )
            if row.get("bib"):
                create_registration(conn, race_id, pid, row["bib"])
            count += 1

    logger.info("Race %d: imported %d participants (%d warnings)",
                race_id, count, len(warnings))
    return count, warnings


def export_participants_csv(conn: sqlite3.Connection, race_id: int) -> str:
    rows = conn.execute(
        """SELECT p.*,
                  (SELECT bib FROM registrations r WHERE r.participant_id = p.id
                   ORDER BY r.id LIMIT 1) AS bib
           FROM participants p WHERE p.race_id=? ORDER BY p.id""",
        (race_id,)
    ).fetchall()
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(PARTICIPANT_COLUMNS)
    for r in rows:
        writer.writerow([r["first_name"], r["last_name"], r["gender"] or "",
                         r["birth_year"] or "", r["country"] or "", r["bib"] or ""])
    return out.getvalue()


def _seconds(ms):
    return "" if ms is None else ms / 1000


def export_results_csv(conn: sqlite3.Connection, race_id: int) -> str:
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(RESULT_COLUMNS)
    for r in results(conn, race_id):
        writer.writerow([
            r["place"] if r["place"] is not None else "",
            r["bib"] or "", r["first_name"], r["last_name"], r["category"] or "",
            _seconds(r["gun_time_ms"]), _seconds(r["chip_time_ms"]),
            _seconds(r["net_time_ms"]),
        ])
    return out.getvalue()
