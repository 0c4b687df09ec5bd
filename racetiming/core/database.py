"""
database.py — SQLite schema init, migration, transactions and setup CRUD.

Single-file database with WAL mode for concurrent reads. Connections run in
autocommit mode; multi-statement work goes through transaction(), which
takes the write lock up front (BEGIN IMMEDIATE) so sequence allocation,
result swaps and adjustments are serialised across processes.
"""

from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from racetiming.core.errors import NotFoundError, ValidationError, InvalidStateError

DB_DIR = Path(os.environ.get("RACETIMING_DATA_DIR",
                             str(Path(__file__).parent.parent / "data")))
DB_NAME = "racetiming.db"


def get_db_path() -> Path:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    return DB_DIR / DB_NAME


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new autocommit connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10, isolation_level=None,
                           check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one atomic unit of work.

    Nested calls join the outer transaction. Any exception rolls back
    everything, including sequence numbers allocated inside the block.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.execute("COMMIT")


def now_ts() -> str:
    """Wall-clock timestamp (UTC, millisecond precision)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS races (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id     TEXT,
    name                TEXT NOT NULL,
    description         TEXT,
    start_date          TEXT NOT NULL,
    timezone            TEXT NOT NULL DEFAULT 'UTC',
    race_type           TEXT NOT NULL DEFAULT 'running',
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS race_sequences (
    race_id         INTEGER PRIMARY KEY REFERENCES races(id),
    last_sequence   INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS checkpoints (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id         INTEGER NOT NULL REFERENCES races(id),
    code            TEXT NOT NULL,
    name            TEXT,
    position_meters INTEGER,
    is_start        INTEGER NOT NULL DEFAULT 0,
    is_finish       INTEGER NOT NULL DEFAULT 0,
    order_index     INTEGER NOT NULL,
    UNIQUE(race_id, order_index)
);

CREATE TABLE IF NOT EXISTS waves (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id         INTEGER NOT NULL REFERENCES races(id),
    name            TEXT,
    scheduled_start TEXT,
    position        INTEGER
);

CREATE TABLE IF NOT EXISTS participants (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id     INTEGER NOT NULL REFERENCES races(id),
    first_name  TEXT NOT NULL,
    last_name   TEXT NOT NULL,
    gender      TEXT,
    birth_year  INTEGER,
    country     TEXT,
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS registrations (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id  INTEGER NOT NULL REFERENCES participants(id),
    bib             TEXT NOT NULL,
    wave_id         INTEGER REFERENCES waves(id),
    seeded_position INTEGER,
    external_id     TEXT,
    created_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS timing_sessions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id     INTEGER NOT NULL REFERENCES races(id),
    device_id   TEXT,
    user_id     TEXT,
    metadata    TEXT,
    started_at  TEXT NOT NULL,
    ended_at    TEXT
);

CREATE TABLE IF NOT EXISTS timing_events (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id             INTEGER NOT NULL REFERENCES races(id),
    participant_id      INTEGER NOT NULL REFERENCES participants(id),
    checkpoint_id       INTEGER REFERENCES checkpoints(id),
    registration_id     INTEGER REFERENCES registrations(id),
    timing_session_id   INTEGER REFERENCES timing_sessions(id),
    time_ms             INTEGER NOT NULL,
    device_ts           TEXT,
    elapsed_ms          INTEGER,
    source              TEXT,
    qualifier           TEXT,
    sequence            INTEGER NOT NULL,
    deleted             INTEGER NOT NULL DEFAULT 0,
    created_by          TEXT,
    created_at          TEXT DEFAULT (datetime('now')),
    UNIQUE(race_id, sequence)
);

CREATE TABLE IF NOT EXISTS result_cache (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id         INTEGER NOT NULL REFERENCES races(id),
    participant_id  INTEGER NOT NULL REFERENCES participants(id),
    registration_id INTEGER REFERENCES registrations(id),
    gun_time_ms     INTEGER,
    chip_time_ms    INTEGER,
    net_time_ms     INTEGER,
    place           INTEGER,
    category        TEXT,
    version         INTEGER NOT NULL DEFAULT 1,
    updated_at      TEXT,
    UNIQUE(race_id, participant_id)
);

CREATE TABLE IF NOT EXISTS result_adjustments (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id         INTEGER NOT NULL REFERENCES races(id),
    participant_id  INTEGER NOT NULL REFERENCES participants(id),
    kind            TEXT NOT NULL DEFAULT 'adjustment',
    adjustment_ms   INTEGER NOT NULL,
    reason          TEXT NOT NULL,
    user_id         TEXT,
    voided          INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    voided_at       TEXT
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id     INTEGER,
    entity_type TEXT NOT NULL,
    entity_id   INTEGER,
    action      TEXT NOT NULL,
    user_id     TEXT,
    before_val  TEXT,
    after_val   TEXT,
    reason      TEXT,
    ts          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_race ON audit_log(race_id, id);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id);

CREATE INDEX IF NOT EXISTS idx_events_participant
    ON timing_events(race_id, participant_id, checkpoint_id, time_ms);
CREATE INDEX IF NOT EXISTS idx_events_checkpoint ON timing_events(race_id, checkpoint_id);
CREATE INDEX IF NOT EXISTS idx_participants_race ON participants(race_id);
CREATE INDEX IF NOT EXISTS idx_adjustments_participant
    ON result_adjustments(race_id, participant_id);

CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


def migrate_db(conn: sqlite3.Connection) -> None:
    """Add new columns to existing tables (idempotent for upgrades)."""
    def _has_column(table: str, column: str) -> bool:
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(c["name"] == column for c in cols)

    # timing_events: device metadata
    if not _has_column("timing_events", "qualifier"):
        conn.execute("ALTER TABLE timing_events ADD COLUMN qualifier TEXT")
    if not _has_column("timing_events", "device_ts"):
        conn.execute("ALTER TABLE timing_events ADD COLUMN device_ts TEXT")

    # result_cache: optimistic concurrency
    if not _has_column("result_cache", "version"):
        conn.execute("ALTER TABLE result_cache ADD COLUMN version INTEGER NOT NULL DEFAULT 1")

    # timing_sessions: free-form metadata
    if not _has_column("timing_sessions", "metadata"):
        conn.execute("ALTER TABLE timing_sessions ADD COLUMN metadata TEXT")

    # races created before the counter table existed
    conn.execute(
        """INSERT OR IGNORE INTO race_sequences (race_id, last_sequence)
           SELECT r.id, COALESCE(MAX(t.sequence), 0)
           FROM races r LEFT JOIN timing_events t ON t.race_id = r.id
           GROUP BY r.id"""
    )


# ======================================================================
# SETTINGS (key-value store for operator switches)
# ======================================================================

def get_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    """Read a setting value from the database."""
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Write a setting value to the database."""
    conn.execute(
        "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
        (key, value)
    )


# ======================================================================
# RACES
# ======================================================================

def create_race(conn: sqlite3.Connection, name: str, start_date: str,
                organization_id: Optional[str] = None,
                description: str = "", timezone_name: str = "UTC",
                race_type: str = "running") -> int:
    """Insert a new race plus its sequence counter and return its id."""
    if not name:
        raise ValidationError("Race name is required", "Race", "name")
    with transaction(conn):
        cur = conn.execute(
            """INSERT INTO races (organization_id, name, description, start_date,
               timezone, race_type)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (organization_id, name, description, start_date,
             timezone_name, race_type)
        )
        race_id = cur.lastrowid
        conn.execute(
            "INSERT INTO race_sequences (race_id, last_sequence) VALUES (?, 0)",
            (race_id,)
        )
    return race_id


def get_race(conn: sqlite3.Connection, race_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM races WHERE id=?", (race_id,)).fetchone()


def require_race(conn: sqlite3.Connection, race_id: int) -> sqlite3.Row:
    race = get_race(conn, race_id)
    if race is None:
        raise NotFoundError(f"Race {race_id} not found", "Race")
    return race


def get_all_races(conn: sqlite3.Connection,
                  organization_id: Optional[str] = None) -> list[sqlite3.Row]:
    if organization_id:
        return conn.execute(
            "SELECT * FROM races WHERE organization_id=? ORDER BY id DESC",
            (organization_id,)
        ).fetchall()
    return conn.execute("SELECT * FROM races ORDER BY id DESC").fetchall()


def update_race(conn: sqlite3.Connection, race_id: int, **kwargs) -> None:
    """Update race fields. Pass field=value pairs."""
    require_race(conn, race_id)
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [race_id]
    conn.execute(f"UPDATE races SET {sets}, updated_at=datetime('now') WHERE id=?", vals)


# ======================================================================
# CHECKPOINTS
# ======================================================================

def _check_single_flag(conn: sqlite3.Connection, race_id: int, flag: str,
                       exclude_id: Optional[int] = None) -> None:
    """A race has at most one start and one finish checkpoint."""
    row = conn.execute(
        f"SELECT id FROM checkpoints WHERE race_id=? AND {flag}=1 AND id != ?",
        (race_id, exclude_id or 0)
    ).fetchone()
    if row:
        label = "start" if flag == "is_start" else "finish"
        raise ValidationError(
            f"Race {race_id} already has a {label} checkpoint (id {row['id']})",
            "Checkpoint", flag
        )


def create_checkpoint(conn: sqlite3.Connection, race_id: int, code: str,
                      order_index: int, name: Optional[str] = None,
                      position_meters: Optional[int] = None,
                      is_start: bool = False, is_finish: bool = False) -> int:
    if not code or len(code) > 50:
        raise ValidationError("Checkpoint code must be 1-50 characters",
                              "Checkpoint", "code")
    with transaction(conn):
        require_race(conn, race_id)
        if is_start:
            _check_single_flag(conn, race_id, "is_start")
        if is_finish:
            _check_single_flag(conn, race_id, "is_finish")
        try:
            cur = conn.execute(
                """INSERT INTO checkpoints (race_id, code, name, position_meters,
                   is_start, is_finish, order_index)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (race_id, code, name, position_meters,
                 int(is_start), int(is_finish), order_index)
            )
        except sqlite3.IntegrityError:
            raise ValidationError(
                f"order_index {order_index} already used in race {race_id}",
                "Checkpoint", "order_index"
            )
    return cur.lastrowid


def get_checkpoint(conn: sqlite3.Connection,
                   checkpoint_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM checkpoints WHERE id=?", (checkpoint_id,)
    ).fetchone()


def get_checkpoints(conn: sqlite3.Connection, race_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM checkpoints WHERE race_id=? ORDER BY order_index", (race_id,)
    ).fetchall()


def _in_race(row: Optional[sqlite3.Row], race_id: int, entity: str,
             label: str, child_id: int) -> sqlite3.Row:
    """A child row must exist and belong to the race named by the caller."""
    if row is None or row["race_id"] != race_id:
        raise NotFoundError(f"{label} {child_id} not found in race {race_id}", entity)
    return row


def update_checkpoint(conn: sqlite3.Connection, race_id: int, checkpoint_id: int,
                      **kwargs) -> None:
    with transaction(conn):
        cp = _in_race(get_checkpoint(conn, checkpoint_id), race_id,
                      "Checkpoint", "Checkpoint", checkpoint_id)
        if kwargs.get("is_start"):
            _check_single_flag(conn, cp["race_id"], "is_start", checkpoint_id)
        if kwargs.get("is_finish"):
            _check_single_flag(conn, cp["race_id"], "is_finish", checkpoint_id)
        if not kwargs:
            return
        for flag in ("is_start", "is_finish"):
            if flag in kwargs:
                kwargs[flag] = int(bool(kwargs[flag]))
        sets = ", ".join(f"{k}=?" for k in kwargs)
        vals = list(kwargs.values()) + [checkpoint_id]
        conn.execute(f"UPDATE checkpoints SET {sets} WHERE id=?", vals)


def delete_checkpoint(conn: sqlite3.Connection, race_id: int, checkpoint_id: int) -> None:
    """Delete a checkpoint. Refused once timing events reference it."""
    with transaction(conn):
        _in_race(get_checkpoint(conn, checkpoint_id), race_id,
                 "Checkpoint", "Checkpoint", checkpoint_id)
        ref = conn.execute(
            "SELECT id FROM timing_events WHERE checkpoint_id=? LIMIT 1",
            (checkpoint_id,)
        ).fetchone()
        if ref:
            raise InvalidStateError(
                f"Checkpoint {checkpoint_id} has timing events", "Checkpoint"
            )
        conn.execute("DELETE FROM checkpoints WHERE id=?", (checkpoint_id,))


def _single_flagged(conn: sqlite3.Connection, race_id: int,
                    flag: str) -> Optional[sqlite3.Row]:
    rows = conn.execute(
        f"SELECT * FROM checkpoints WHERE race_id=? AND {flag}=1 ORDER BY order_index",
        (race_id,)
    ).fetchall()
    if len(rows) > 1:
        label = "start" if flag == "is_start" else "finish"
        raise ValidationError(
            f"Race {race_id} has {len(rows)} {label} checkpoints", "Checkpoint", flag
        )
    return rows[0] if rows else None


def get_start_checkpoint(conn: sqlite3.Connection,
                         race_id: int) -> Optional[sqlite3.Row]:
    return _single_flagged(conn, race_id, "is_start")


def get_finish_checkpoint(conn: sqlite3.Connection,
                          race_id: int) -> Optional[sqlite3.Row]:
    return _single_flagged(conn, race_id, "is_finish")


# ======================================================================
# WAVES
# ======================================================================

def create_wave(conn: sqlite3.Connection, race_id: int, name: Optional[str] = None,
                scheduled_start: Optional[str] = None,
                position: Optional[int] = None) -> int:
    require_race(conn, race_id)
    cur = conn.execute(
        "INSERT INTO waves (race_id, name, scheduled_start, position) VALUES (?, ?, ?, ?)",
        (race_id, name, scheduled_start, position)
    )
    return cur.lastrowid


def get_waves(conn: sqlite3.Connection, race_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM waves WHERE race_id=? ORDER BY position, id", (race_id,)
    ).fetchall()


def reorder_waves(conn: sqlite3.Connection, race_id: int,
                  wave_ids_in_order: list[int]) -> None:
    """Set positions 1..n following the given order."""
    with transaction(conn):
        for i, wid in enumerate(wave_ids_in_order, 1):
            cur = conn.execute(
                "UPDATE waves SET position=? WHERE id=? AND race_id=?",
                (i, wid, race_id)
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Wave {wid} not found in race {race_id}", "Wave")


# ======================================================================
# PARTICIPANTS / REGISTRATIONS
# ======================================================================

def create_participant(conn: sqlite3.Connection, race_id: int, first_name: str,
                       last_name: str, gender: Optional[str] = None,
                       birth_year: Optional[int] = None,
                       country: Optional[str] = None) -> int:
    require_race(conn, race_id)
    if birth_year is not None and not 1900 <= birth_year <= datetime.now().year:
        raise ValidationError(f"Invalid birth year {birth_year}",
                              "Participant", "birth_year")
    cur = conn.execute(
        """INSERT INTO participants (race_id, first_name, last_name, gender,
           birth_year, country)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (race_id, first_name, last_name, gender, birth_year, country)
    )
    return cur.lastrowid


def get_participant(conn: sqlite3.Connection,
                    participant_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM participants WHERE id=?", (participant_id,)
    ).fetchone()


def get_participants(conn: sqlite3.Connection, race_id: int) -> list[sqlite3.Row]:
    """Participants in creation order."""
    return conn.execute(
        "SELECT * FROM participants WHERE race_id=? ORDER BY id", (race_id,)
    ).fetchall()


def update_participant(conn: sqlite3.Connection, race_id: int, participant_id: int,
                       **kwargs) -> None:
    _in_race(get_participant(conn, participant_id), race_id,
             "Participant", "Participant", participant_id)
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [participant_id]
    conn.execute(f"UPDATE participants SET {sets} WHERE id=?", vals)


def create_registration(conn: sqlite3.Connection, race_id: int, participant_id: int,
                        bib: str,
                        wave_id: Optional[int] = None,
                        seeded_position: Optional[int] = None,
                        external_id: Optional[str] = None) -> int:
    participant = _in_race(get_participant(conn, participant_id), race_id,
                           "Participant", "Participant", participant_id)
    if wave_id is not None:
        wave = conn.execute("SELECT race_id FROM waves WHERE id=?", (wave_id,)).fetchone()
        if wave is None or wave["race_id"] != participant["race_id"]:
            raise ValidationError(f"Wave {wave_id} does not belong to the race",
                                  "Registration", "wave_id")
    cur = conn.execute(
        """INSERT INTO registrations (participant_id, bib, wave_id,
           seeded_position, external_id)
           VALUES (?, ?, ?, ?, ?)""",
        (participant_id, str(bib), wave_id, seeded_position, external_id)
    )
    return cur.lastrowid


def get_registration(conn: sqlite3.Connection,
                     registration_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM registrations WHERE id=?", (registration_id,)
    ).fetchone()


def get_registration_for_participant(conn: sqlite3.Connection,
                                     participant_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM registrations WHERE participant_id=? ORDER BY id LIMIT 1",
        (participant_id,)
    ).fetchone()


# ======================================================================
# TIMING SESSIONS
# ======================================================================

def start_session(conn: sqlite3.Connection, race_id: int,
                  device_id: Optional[str] = None,
                  user_id: Optional[str] = None) -> int:
    require_race(conn, race_id)
    if device_id is not None and len(device_id) > 200:
        raise ValidationError("device_id longer than 200 characters",
                              "TimingSession", "device_id")
    cur = conn.execute(
        """INSERT INTO timing_sessions (race_id, device_id, user_id, started_at)
           VALUES (?, ?, ?, ?)""",
        (race_id, device_id, user_id, now_ts())
    )
    return cur.lastrowid


def get_session(conn: sqlite3.Connection, session_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM timing_sessions WHERE id=?", (session_id,)
    ).fetchone()


def get_sessions(conn: sqlite3.Connection, race_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM timing_sessions WHERE race_id=? ORDER BY id", (race_id,)
    ).fetchall()


def end_session(conn: sqlite3.Connection, race_id: int, session_id: int) -> None:
    with transaction(conn):
        session = _in_race(get_session(conn, session_id), race_id,
                           "TimingSession", "Timing session", session_id)
        if session["ended_at"]:
            raise InvalidStateError(f"Timing session {session_id} already ended",
                                    "TimingSession", "ended_at")
        conn.execute(
            "UPDATE timing_sessions SET ended_at=? WHERE id=?", (now_ts(), session_id)
        )


def update_session(conn: sqlite3.Connection, race_id: int, session_id: int,
                   device_id: Optional[str] = None,
                   metadata: Optional[dict] = None) -> None:
    """Update the device and/or metadata; None leaves a field untouched."""
    _in_race(get_session(conn, session_id), race_id,
             "TimingSession", "Timing session", session_id)
    if device_id is not None:
        if len(device_id) > 200:
            raise ValidationError("device_id longer than 200 characters",
                                  "TimingSession", "device_id")
        conn.execute("UPDATE timing_sessions SET device_id=? WHERE id=?",
                     (device_id, session_id))
    if metadata is not None:
        conn.execute("UPDATE timing_sessions SET metadata=? WHERE id=?",
                     (json.dumps(metadata), session_id))


# ======================================================================
# RESULT CACHE (shared read helpers)
# ======================================================================

def get_result(conn: sqlite3.Connection, race_id: int,
               participant_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM result_cache WHERE race_id=? AND participant_id=?",
        (race_id, participant_id)
    ).fetchone()
