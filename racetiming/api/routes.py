"""
routes.py — REST API endpoints for race timing.

All endpoints under /api/. Thin wrappers around core/: each request opens its
own connection, resolves the caller into an Actor and hands over to the core.
Core errors (RaceTimingError) are turned into HTTP responses by the handler
registered in server.py.

Caller identity comes from two headers set by the gateway in front of us:
X-Organization-Id (must match the race's organization to modify it) and
X-User-Id (recorded in the audit trail).
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from racetiming.core import analytics, audit
from racetiming.core.actor import Actor, require_authorized
from racetiming.core.adjustments import (
    add_penalty, adjust_time, disqualify, list_adjustments, reinstate,
    revoke_adjustment,
)
from racetiming.core.categories import (
    assign_all, recalculate_category_places, set_category,
)
from racetiming.core.database import (
    get_connection, get_setting, set_setting,
    create_race, get_all_races, require_race, update_race,
    create_checkpoint, get_checkpoints, get_checkpoint, update_checkpoint,
    delete_checkpoint,
    create_wave, get_waves, reorder_waves,
    create_participant, get_participant, get_participants, update_participant,
    create_registration, get_registration,
    start_session, get_session, get_sessions, end_session, update_session,
)
from racetiming.core.errors import NotFoundError
from racetiming.core.event_log import (
    TimingEventUpdate, get_timing_event, list_timing_events, participant_times,
    recalculate_times, soft_delete_event, undo_delete_event, update_timing_event,
)
from racetiming.core.exchange import (
    export_participants_csv, export_results_csv, import_participants_csv,
)
from racetiming.core.notify import LoggingListener
from racetiming.core.results_engine import (
    categories_in_race, gender_results, leaderboard, participant_result,
    recompute, results,
)
from racetiming.core.sequencer import (
    EventSpec, record_bulk_timing_events, record_timing_event,
)

logger = logging.getLogger("racetiming.api")

router = APIRouter()

listener = LoggingListener()


# ─── Helper ──────────────────────────────────────────────────────────

def _row_to_dict(row) -> dict:
    """Convert sqlite3.Row to dict."""
    if row is None:
        return {}
    return dict(row)


def _rows_to_list(rows) -> list[dict]:
    """Convert list of sqlite3.Row to list of dicts."""
    return [dict(r) for r in rows]


def _get_conn():
    return get_connection()


def _actor(request: Request, conn, race_id: int) -> Actor:
    """Resolve the caller for a race. Races without an organization are open."""
    race = require_race(conn, race_id)
    org = request.headers.get("x-organization-id")
    authorized = race["organization_id"] is None or org == race["organization_id"]
    return Actor(user_id=request.headers.get("x-user-id"), authorized=authorized,
                 race_id=race_id)


def _check_ingest(conn) -> None:
    if get_setting(conn, "ingest_paused", "false") == "true":
        raise HTTPException(503, "Ingest is paused")


def _event_in_race(conn, race_id: int, event_id: int) -> dict:
    event = get_timing_event(conn, event_id)
    if event["race_id"] != race_id:
        raise NotFoundError(f"Timing event {event_id} not found in race {race_id}",
                            "TimingEvent")
    return event


# ─── Pydantic models ─────────────────────────────────────────────────

class RaceCreate(BaseModel):
    name: str
    start_date: str
    description: str = ""
    timezone: str = "UTC"
    race_type: str = "running"

class RaceUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    timezone: Optional[str] = None
    race_type: Optional[str] = None

class CheckpointCreate(BaseModel):
    code: str
    order_index: int
    name: Optional[str] = None
    position_meters: Optional[int] = None
    is_start: bool = False
    is_finish: bool = False

class CheckpointUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    order_index: Optional[int] = None
    position_meters: Optional[int] = None
    is_start: Optional[bool] = None
    is_finish: Optional[bool] = None

class WaveCreate(BaseModel):
    name: Optional[str] = None
    scheduled_start: Optional[str] = None
    position: Optional[int] = None

class WaveOrder(BaseModel):
    wave_ids: list[int]

class ParticipantCreate(BaseModel):
    first_name: str
    last_name: str
    gender: Optional[str] = None
    birth_year: Optional[int] = None
    country: Optional[str] = None
    bib: Optional[str] = None

class ParticipantUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    gender: Optional[str] = None
    birth_year: Optional[int] = None
    country: Optional[str] = None

class RegistrationCreate(BaseModel):
    bib: str
    wave_id: Optional[int] = None
    seeded_position: Optional[int] = None
    external_id: Optional[str] = None

class SessionCreate(BaseModel):
    device_id: Optional[str] = None

class SessionUpdate(BaseModel):
    device_id: Optional[str] = None
    metadata: Optional[dict] = None

class TimingEventCreate(BaseModel):
    participant_id: int
    checkpoint_id: Optional[int] = None
    time_ms: int
    registration_id: Optional[int] = None
    timing_session_id: Optional[int] = None
    device_ts: Optional[str] = None
    source: Optional[str] = None
    qualifier: Optional[str] = None

class TimingEventBulk(BaseModel):
    events: list[TimingEventCreate]
    resolve_within_batch: bool = False

class TimingEventPatch(BaseModel):
    time_ms: Optional[int] = None
    device_ts: Optional[str] = None
    source: Optional[str] = None
    qualifier: Optional[str] = None
    reason: Optional[str] = None

class ReasonBody(BaseModel):
    reason: Optional[str] = None

class CategoryBody(BaseModel):
    category: str
    reason: Optional[str] = None

class AdjustBody(BaseModel):
    adjustment_ms: int
    reason: str
    expected_version: Optional[int] = None

class PenaltyBody(BaseModel):
    penalty_seconds: int
    reason: str
    expected_version: Optional[int] = None

class DisqualifyBody(BaseModel):
    reason: str
    expected_version: Optional[int] = None

class ReinstateBody(BaseModel):
    category: Optional[str] = None
    reason: Optional[str] = None
    expected_version: Optional[int] = None

class RevokeBody(BaseModel):
    reason: str


def _spec(body: TimingEventCreate) -> EventSpec:
    return EventSpec(**body.model_dump())


# ═══════════════════════════════════════════════════════════════════════
# RACES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races")
async def list_races(request: Request):
    conn = _get_conn()
    try:
        return _rows_to_list(get_all_races(conn, request.headers.get("x-organization-id")))
    finally:
        conn.close()


@router.post("/races")
async def create_race_endpoint(body: RaceCreate, request: Request):
    conn = _get_conn()
    try:
        race_id = create_race(
            conn, body.name, body.start_date,
            organization_id=request.headers.get("x-organization-id"),
            description=body.description, timezone_name=body.timezone,
            race_type=body.race_type,
        )
        logger.info("Race %d created: %s", race_id, body.name)
        return {"id": race_id}
    finally:
        conn.close()


@router.get("/races/{race_id}")
async def get_race_endpoint(race_id: int):
    conn = _get_conn()
    try:
        return _row_to_dict(require_race(conn, race_id))
    finally:
        conn.close()


@router.put("/races/{race_id}")
async def update_race_endpoint(race_id: int, body: RaceUpdate, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        fields = body.model_dump(exclude_unset=True)
        if "timezone" in fields:
            fields["timezone"] = fields["timezone"] or "UTC"
        update_race(conn, race_id, **fields)
        return _row_to_dict(require_race(conn, race_id))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# CHECKPOINTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/checkpoints")
async def list_checkpoints(race_id: int):
    conn = _get_conn()
    try:
        return _rows_to_list(get_checkpoints(conn, race_id))
    finally:
        conn.close()


@router.post("/races/{race_id}/checkpoints")
async def create_checkpoint_endpoint(race_id: int, body: CheckpointCreate,
                                     request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        cp_id = create_checkpoint(
            conn, race_id, body.code, body.order_index, name=body.name,
            position_meters=body.position_meters,
            is_start=body.is_start, is_finish=body.is_finish,
        )
        return {"id": cp_id}
    finally:
        conn.close()


@router.put("/races/{race_id}/checkpoints/{checkpoint_id}")
async def update_checkpoint_endpoint(race_id: int, checkpoint_id: int,
                                     body: CheckpointUpdate, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        update_checkpoint(conn, race_id, checkpoint_id,
                          **body.model_dump(exclude_unset=True))
        return _row_to_dict(get_checkpoint(conn, checkpoint_id))
    finally:
        conn.close()


@router.delete("/races/{race_id}/checkpoints/{checkpoint_id}")
async def delete_checkpoint_endpoint(race_id: int, checkpoint_id: int,
                                     request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        delete_checkpoint(conn, race_id, checkpoint_id)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# WAVES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/waves")
async def list_waves(race_id: int):
    conn = _get_conn()
    try:
        return _rows_to_list(get_waves(conn, race_id))
    finally:
        conn.close()


@router.post("/races/{race_id}/waves")
async def create_wave_endpoint(race_id: int, body: WaveCreate, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        wave_id = create_wave(conn, race_id, body.name, body.scheduled_start,
                              body.position)
        return {"id": wave_id}
    finally:
        conn.close()


@router.post("/races/{race_id}/waves/reorder")
async def reorder_waves_endpoint(race_id: int, body: WaveOrder, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        reorder_waves(conn, race_id, body.wave_ids)
        return _rows_to_list(get_waves(conn, race_id))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# PARTICIPANTS / REGISTRATIONS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/participants")
async def list_participants(race_id: int):
    conn = _get_conn()
    try:
        return _rows_to_list(get_participants(conn, race_id))
    finally:
        conn.close()


@router.post("/races/{race_id}/participants")
async def create_participant_endpoint(race_id: int, body: ParticipantCreate,
                                      request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        pid = create_participant(conn, race_id, body.first_name, body.last_name,
                                 body.gender, body.birth_year, body.country)
        reg_id = create_registration(conn, race_id, pid, body.bib) if body.bib else None
        return {"id": pid, "registration_id": reg_id}
    finally:
        conn.close()


@router.get("/races/{race_id}/participants/{participant_id}")
async def get_participant_endpoint(race_id: int, participant_id: int):
    conn = _get_conn()
    try:
        p = get_participant(conn, participant_id)
        if not p or p["race_id"] != race_id:
            raise HTTPException(404, "Participant not found")
        return _row_to_dict(p)
    finally:
        conn.close()


@router.put("/races/{race_id}/participants/{participant_id}")
async def update_participant_endpoint(race_id: int, participant_id: int,
                                      body: ParticipantUpdate, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        update_participant(conn, race_id, participant_id,
                           **body.model_dump(exclude_unset=True))
        return _row_to_dict(get_participant(conn, participant_id))
    finally:
        conn.close()


@router.post("/races/{race_id}/participants/{participant_id}/registrations")
async def create_registration_endpoint(race_id: int, participant_id: int,
                                       body: RegistrationCreate, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        reg_id = create_registration(conn, race_id, participant_id, body.bib,
                                     body.wave_id, body.seeded_position,
                                     body.external_id)
        return _row_to_dict(get_registration(conn, reg_id))
    finally:
        conn.close()


@router.get("/races/{race_id}/participants/{participant_id}/times")
async def participant_times_endpoint(race_id: int, participant_id: int):
    conn = _get_conn()
    try:
        return participant_times(conn, race_id, participant_id)
    finally:
        conn.close()


@router.get("/races/{race_id}/participants/{participant_id}/splits")
async def participant_splits_endpoint(race_id: int, participant_id: int):
    conn = _get_conn()
    try:
        return analytics.participant_splits(conn, race_id, participant_id)
    finally:
        conn.close()


@router.post("/races/{race_id}/participants/{participant_id}/recalculate")
async def recalculate_times_endpoint(race_id: int, participant_id: int,
                                     request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        count = recalculate_times(conn, race_id, participant_id, actor)
        return {"processed": count}
    finally:
        conn.close()


@router.post("/races/{race_id}/participants/import")
async def import_participants_endpoint(race_id: int, request: Request,
                                       file: UploadFile = File(...)):
    """Import participants from CSV (firstName,lastName,gender,birthYear,country,bib)."""
    content = (await file.read()).decode("utf-8-sig")
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        count, warnings = import_participants_csv(conn, race_id, content, actor)
        return {"count": count, "warnings": warnings}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# TIMING SESSIONS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/sessions")
async def list_sessions(race_id: int):
    conn = _get_conn()
    try:
        return _rows_to_list(get_sessions(conn, race_id))
    finally:
        conn.close()


@router.post("/races/{race_id}/sessions")
async def start_session_endpoint(race_id: int, body: SessionCreate, request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        require_authorized(actor, race_id)
        session_id = start_session(conn, race_id, body.device_id, actor.user_id)
        return _row_to_dict(get_session(conn, session_id))
    finally:
        conn.close()


@router.post("/races/{race_id}/sessions/{session_id}/end")
async def end_session_endpoint(race_id: int, session_id: int, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        end_session(conn, race_id, session_id)
        return _row_to_dict(get_session(conn, session_id))
    finally:
        conn.close()


@router.put("/races/{race_id}/sessions/{session_id}")
async def update_session_endpoint(race_id: int, session_id: int,
                                  body: SessionUpdate, request: Request):
    conn = _get_conn()
    try:
        require_authorized(_actor(request, conn, race_id), race_id)
        update_session(conn, race_id, session_id, body.device_id, body.metadata)
        return _row_to_dict(get_session(conn, session_id))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# TIMING EVENTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/events")
async def list_events(race_id: int,
                      participant_id: Optional[int] = Query(None),
                      checkpoint_id: Optional[int] = Query(None),
                      session_id: Optional[int] = Query(None),
                      include_deleted: bool = Query(False)):
    conn = _get_conn()
    try:
        return list_timing_events(conn, race_id, participant_id, checkpoint_id,
                                  session_id, include_deleted)
    finally:
        conn.close()


@router.post("/races/{race_id}/events")
async def record_event_endpoint(race_id: int, body: TimingEventCreate,
                                request: Request):
    conn = _get_conn()
    try:
        _check_ingest(conn)
        actor = _actor(request, conn, race_id)
        return record_timing_event(conn, race_id, _spec(body), actor, listener)
    finally:
        conn.close()


@router.post("/races/{race_id}/events/bulk")
async def record_bulk_endpoint(race_id: int, body: TimingEventBulk, request: Request):
    conn = _get_conn()
    try:
        _check_ingest(conn)
        actor = _actor(request, conn, race_id)
        events = record_bulk_timing_events(
            conn, race_id, [_spec(e) for e in body.events], actor, listener,
            resolve_within_batch=body.resolve_within_batch,
        )
        return {"count": len(events), "events": events}
    finally:
        conn.close()


@router.get("/races/{race_id}/events/{event_id}")
async def get_event_endpoint(race_id: int, event_id: int):
    conn = _get_conn()
    try:
        return _event_in_race(conn, race_id, event_id)
    finally:
        conn.close()


@router.put("/races/{race_id}/events/{event_id}")
async def update_event_endpoint(race_id: int, event_id: int, body: TimingEventPatch,
                                request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        _event_in_race(conn, race_id, event_id)
        fields = body.model_dump(exclude_unset=True)
        reason = fields.pop("reason", None)
        return update_timing_event(conn, event_id, TimingEventUpdate(**fields),
                                   actor, reason)
    finally:
        conn.close()


@router.delete("/races/{race_id}/events/{event_id}")
async def delete_event_endpoint(race_id: int, event_id: int, request: Request,
                                reason: Optional[str] = Query(None)):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        _event_in_race(conn, race_id, event_id)
        return soft_delete_event(conn, event_id, actor, reason)
    finally:
        conn.close()


@router.post("/races/{race_id}/events/{event_id}/undo")
async def undo_delete_endpoint(race_id: int, event_id: int, body: ReasonBody,
                               request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        _event_in_race(conn, race_id, event_id)
        return undo_delete_event(conn, event_id, actor, body.reason)
    finally:
        conn.close()


@router.get("/races/{race_id}/events/{event_id}/history")
async def event_history_endpoint(race_id: int, event_id: int):
    conn = _get_conn()
    try:
        _event_in_race(conn, race_id, event_id)
        return audit.history(conn, audit.TIMING_EVENT, event_id)
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════

@router.post("/races/{race_id}/results/recompute")
async def recompute_endpoint(race_id: int, request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        count = recompute(conn, race_id, actor, listener)
        return {"count": count}
    finally:
        conn.close()


@router.get("/races/{race_id}/results")
async def results_endpoint(race_id: int, category: Optional[str] = Query(None)):
    conn = _get_conn()
    try:
        return results(conn, race_id, category)
    finally:
        conn.close()


@router.get("/races/{race_id}/leaderboard")
async def leaderboard_endpoint(race_id: int, category: Optional[str] = Query(None),
                               limit: int = Query(100, ge=1, le=1000)):
    conn = _get_conn()
    try:
        return leaderboard(conn, race_id, category, limit)
    finally:
        conn.close()


@router.get("/races/{race_id}/results/{participant_id}")
async def participant_result_endpoint(race_id: int, participant_id: int):
    conn = _get_conn()
    try:
        result = participant_result(conn, race_id, participant_id)
        if result is None:
            raise HTTPException(404, "Result not found")
        return result
    finally:
        conn.close()


@router.get("/races/{race_id}/results/{participant_id}/history")
async def result_history_endpoint(race_id: int, participant_id: int):
    conn = _get_conn()
    try:
        result = participant_result(conn, race_id, participant_id)
        if result is None:
            raise HTTPException(404, "Result not found")
        return audit.history(conn, audit.RESULT, result["id"])
    finally:
        conn.close()


@router.get("/races/{race_id}/gender-results/{gender}")
async def gender_results_endpoint(race_id: int, gender: str):
    conn = _get_conn()
    try:
        return gender_results(conn, race_id, gender)
    finally:
        conn.close()


@router.get("/races/{race_id}/export/results.csv")
async def export_results_endpoint(race_id: int):
    conn = _get_conn()
    try:
        require_race(conn, race_id)
        return PlainTextResponse(
            export_results_csv(conn, race_id), media_type="text/csv",
            headers={"Content-Disposition":
                     f"attachment; filename=results_{race_id}.csv"},
        )
    finally:
        conn.close()


@router.get("/races/{race_id}/export/participants.csv")
async def export_participants_endpoint(race_id: int):
    conn = _get_conn()
    try:
        require_race(conn, race_id)
        return PlainTextResponse(
            export_participants_csv(conn, race_id), media_type="text/csv",
            headers={"Content-Disposition":
                     f"attachment; filename=participants_{race_id}.csv"},
        )
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# CATEGORIES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/categories")
async def categories_endpoint(race_id: int):
    conn = _get_conn()
    try:
        return categories_in_race(conn, race_id)
    finally:
        conn.close()


@router.post("/races/{race_id}/categories/assign")
async def assign_categories_endpoint(race_id: int, request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return {"count": assign_all(conn, race_id, actor)}
    finally:
        conn.close()


@router.post("/races/{race_id}/categories/{category}/recalculate")
async def recalculate_category_endpoint(race_id: int, category: str,
                                        request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return {"count": recalculate_category_places(conn, race_id, category, actor)}
    finally:
        conn.close()


@router.put("/races/{race_id}/results/{participant_id}/category")
async def set_category_endpoint(race_id: int, participant_id: int,
                                body: CategoryBody, request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return set_category(conn, race_id, participant_id, body.category, actor,
                            body.reason)
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# ADJUSTMENTS
# ═══════════════════════════════════════════════════════════════════════

@router.post("/races/{race_id}/results/{participant_id}/adjust")
async def adjust_endpoint(race_id: int, participant_id: int, body: AdjustBody,
                          request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return adjust_time(conn, race_id, participant_id, body.adjustment_ms,
                           body.reason, actor, body.expected_version)
    finally:
        conn.close()


@router.post("/races/{race_id}/results/{participant_id}/penalty")
async def penalty_endpoint(race_id: int, participant_id: int, body: PenaltyBody,
                           request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return add_penalty(conn, race_id, participant_id, body.penalty_seconds,
                           body.reason, actor, body.expected_version)
    finally:
        conn.close()


@router.post("/races/{race_id}/results/{participant_id}/disqualify")
async def disqualify_endpoint(race_id: int, participant_id: int,
                              body: DisqualifyBody, request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return disqualify(conn, race_id, participant_id, body.reason, actor,
                          body.expected_version)
    finally:
        conn.close()


@router.post("/races/{race_id}/results/{participant_id}/reinstate")
async def reinstate_endpoint(race_id: int, participant_id: int,
                             body: ReinstateBody, request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return reinstate(conn, race_id, participant_id, actor, body.category,
                         body.reason, body.expected_version)
    finally:
        conn.close()


@router.get("/races/{race_id}/adjustments")
async def list_adjustments_endpoint(race_id: int,
                                    participant_id: Optional[int] = Query(None)):
    conn = _get_conn()
    try:
        return list_adjustments(conn, race_id, participant_id)
    finally:
        conn.close()


@router.post("/races/{race_id}/adjustments/{adjustment_id}/revoke")
async def revoke_adjustment_endpoint(race_id: int, adjustment_id: int,
                                     body: RevokeBody, request: Request):
    conn = _get_conn()
    try:
        actor = _actor(request, conn, race_id)
        return revoke_adjustment(conn, race_id, adjustment_id, body.reason, actor)
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# AUDIT / ANALYTICS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/audit")
async def audit_log_endpoint(race_id: int,
                             entity_type: Optional[str] = Query(None),
                             action: Optional[str] = Query(None),
                             user_id: Optional[str] = Query(None),
                             limit: int = Query(100, ge=1, le=1000)):
    conn = _get_conn()
    try:
        return audit.list_for_race(conn, race_id, entity_type, action, user_id, limit)
    finally:
        conn.close()


@router.get("/races/{race_id}/stats")
async def race_stats_endpoint(race_id: int):
    conn = _get_conn()
    try:
        require_race(conn, race_id)
        return analytics.race_statistics(conn, race_id)
    finally:
        conn.close()


@router.get("/races/{race_id}/stats/checkpoints")
async def checkpoint_stats_endpoint(race_id: int):
    conn = _get_conn()
    try:
        return analytics.checkpoint_statistics(conn, race_id)
    finally:
        conn.close()


@router.get("/races/{race_id}/stats/pace")
async def pace_endpoint(race_id: int):
    conn = _get_conn()
    try:
        return analytics.pace_analysis(conn, race_id)
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# RACE CONTROL
# ═══════════════════════════════════════════════════════════════════════

@router.post("/control/pause-ingest")
async def pause_ingest():
    """Pause timing event ingestion (single and bulk)."""
    conn = _get_conn()
    try:
        set_setting(conn, "ingest_paused", "true")
    finally:
        conn.close()
    logger.warning("Ingest paused")
    return {"ok": True, "ingest_paused": True}


@router.post("/control/resume-ingest")
async def resume_ingest():
    conn = _get_conn()
    try:
        set_setting(conn, "ingest_paused", "false")
    finally:
        conn.close()
    logger.info("Ingest resumed")
    return {"ok": True, "ingest_paused": False}


@router.get("/status")
async def status():
    conn = _get_conn()
    try:
        return {
            "ok": True,
            "ingest_paused": get_setting(conn, "ingest_paused", "false") == "true",
        }
    finally:
        conn.close()
