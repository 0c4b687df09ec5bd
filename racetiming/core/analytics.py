"""
analytics.py — Read-only race statistics for the results desk.
"""

from __future__ import annotations

import sqlite3
from typing import Optional

from racetiming.core.event_log import participant_times
from racetiming.core.results_engine import DQ

PACE_BUCKET_MINUTES = 10


def _seconds(ms: Optional[float]) -> Optional[float]:
    return None if ms is None else round(ms / 1000, 3)


def race_statistics(conn: sqlite3.Connection, race_id: int) -> dict:
    """Participant / finisher / DNF / DQ counts and chip time summary (seconds).

    Disqualified entries are left out of the time summary.
    """
    total = conn.execute(
        "SELECT COUNT(*) AS n FROM participants WHERE race_id=?", (race_id,)
    ).fetchone()["n"]
    row = conn.execute(
        """SELECT
             SUM(CASE WHEN category = ? THEN 1 ELSE 0 END) AS dq,
             SUM(CASE WHEN chip_time_ms IS NOT NULL AND COALESCE(category, '') != ?
                      THEN 1 ELSE 0 END) AS finishers,
             AVG(CASE WHEN COALESCE(category, '') != ? THEN chip_time_ms END) AS avg_ms,
             MIN(CASE WHEN COALESCE(category, '') != ? THEN chip_time_ms END) AS min_ms,
             MAX(CASE WHEN COALESCE(category, '') != ? THEN chip_time_ms END) AS max_ms
           FROM result_cache WHERE race_id=?""",
        (DQ, DQ, DQ, DQ, DQ, race_id)
    ).fetchone()
    finishers = row["finishers"] or 0
    dq = row["dq"] or 0
    return {
        "total_participants": total,
        "finishers": finishers,
        "disqualified": dq,
        "dnf": total - finishers - dq,
        "average_time_seconds": _seconds(row["avg_ms"]),
        "fastest_time_seconds": _seconds(row["min_ms"]),
        "slowest_time_seconds": _seconds(row["max_ms"]),
    }


def checkpoint_statistics(conn: sqlite3.Connection, race_id: int) -> list[dict]:
    """Per checkpoint: event count, mean elapsed seconds, passings per hour."""
    rows = conn.execute(
        """SELECT c.id, c.code, c.name, c.order_index,
                  COUNT(t.id) AS event_count,
                  AVG(t.elapsed_ms) AS avg_elapsed_ms,
                  MIN(t.time_ms) AS first_ms, MAX(t.time_ms) AS last_ms
           FROM checkpoints c
           LEFT JOIN timing_events t ON t.checkpoint_id = c.id AND t.deleted = 0
           WHERE c.race_id=?
           GROUP BY c.id ORDER BY c.order_index""",
        (race_id,)
    ).fetchall()
    stats = []
    for r in rows:
        throughput = None
        if r["event_count"] and r["last_ms"] > r["first_ms"]:
            hours = (r["last_ms"] - r["first_ms"]) / 3_600_000
            throughput = round(r["event_count"] / hours, 1)
        stats.append({
            "checkpoint_id": r["id"],
            "code": r["code"],
            "name": r["name"],
            "order_index": r["order_index"],
            "event_count": r["event_count"],
            "average_elapsed_seconds": _seconds(r["avg_elapsed_ms"]),
            "throughput_per_hour": throughput,
        })
    return stats


def participant_splits(conn: sqlite3.Connection, race_id: int,
                       participant_id: int) -> list[dict]:
    """Course-ordered passings with the split from the previous one."""
    splits = []
    prev_elapsed = None
    for e in participant_times(conn, race_id, participant_id):
        split = None
        if e["elapsed_ms"] is not None and prev_elapsed is not None:
            split = e["elapsed_ms"] - prev_elapsed
        splits.append({
            "checkpoint_id": e["checkpoint_id"],
            "checkpoint_code": e["checkpoint_code"],
            "time_ms": e["time_ms"],
            "elapsed_ms": e["elapsed_ms"],
            "split_ms": split,
        })
        if e["elapsed_ms"] is not None:
            prev_elapsed = e["elapsed_ms"]
    return splits


def pace_analysis(conn: sqlite3.Connection, race_id: int,
                  bucket_minutes: int = PACE_BUCKET_MINUTES) -> list[dict]:
    """Finishers grouped into chip-time buckets, e.g. "50-60 min: 12 finishers"."""
    bucket_ms = bucket_minutes * 60_000
    rows = conn.execute(
        """SELECT chip_time_ms FROM result_cache
           WHERE race_id=? AND chip_time_ms IS NOT NULL
             AND COALESCE(category, '') != ?""",
        (race_id, DQ)
    ).fetchall()
    counts: dict[int, int] = {}
    for r in rows:
        bucket = max(r["chip_time_ms"], 0) // bucket_ms
        counts[bucket] = counts.get(bucket, 0) + 1
    buckets = []
    for bucket in sorted(counts):
        lo = bucket * bucket_minutes
        label = f"{lo}-{lo + bucket_minutes} min"
        buckets.append({
            "range": label,
            "finishers": counts[bucket],
            "summary": f"{label}: {counts[bucket]} finishers",
        })
    return buckets
