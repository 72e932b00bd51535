from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from soundpath.domain import OrganizationWorkspace, PersonalWorkspace
from soundpath.errors import ApiError, validation_failed
from soundpath.routes._deps import session_from_request, trace_id_from_request, track_payload
from soundpath.schemas import (
    CreateTrackRequest,
    RejectTrackRequest,
    UpdateTrackRequest,
    VoteRequest,
    WorkspaceRequest,
    success_envelope,
)
from soundpath.store import store

router = APIRouter(prefix="/api/v1", tags=["tracks"])


@router.post("/workspace")
def switch_workspace(payload: WorkspaceRequest, request: Request):
    session = session_from_request(request)
    if payload.kind == "personal":
        scope = session.switch_workspace(PersonalWorkspace(session.staff_id))
    elif payload.kind == "organization":
        if not payload.organization_id:
            raise validation_failed("organization_id is required for organization workspaces")
        scope = session.switch_workspace(OrganizationWorkspace(payload.organization_id))
        if payload.subsidiary.strip() and payload.subsidiary.strip() != "all":
            scope = session.set_subsidiary_filter(payload.subsidiary)
    else:
        scope = session.switch_workspace(None)
    return success_envelope(
        {
            "kind": scope.filter.kind,
            "organization_ids": list(scope.filter.organization_ids),
            "permissions": scope.permissions.as_dict(),
            "track_count": len(session.tracks.value),
        },
        trace_id_from_request(request),
    )


@router.get("/tracks")
def list_tracks(
    request: Request,
    phase: str | None = Query(default=None),
    include_archived: bool = Query(default=False),
):
    session = session_from_request(request)
    session.view_activated()
    items = []
    for track in session.tracks.value:
        if track.archived and not include_archived:
            continue
        if phase is not None and track.phase.value != phase.replace("-", "_"):
            continue
        items.append(track.as_dict())
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/tracks/stats")
def track_stats(request: Request):
    session = session_from_request(request)
    return success_envelope(
        {
            "by_phase": session.quick_stats(),
            "upcoming_releases": [t.as_dict() for t in session.upcoming_releases()],
            "watched": [t.as_dict() for t in session.watched_tracks()],
        },
        trace_id_from_request(request),
    )


@router.post("/tracks")
def create_track(
    payload: CreateTrackRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    if not idempotency_key:
        raise ApiError(
            code="IDEMPOTENCY_MISSING",
            message="Idempotency-Key header is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    session = session_from_request(request)
    data = store.run_idempotent(
        endpoint="POST:/api/v1/tracks",
        scope_key=f"{session.staff_id}:{session.scope.filter.cache_key()}",
        idempotency_key=idempotency_key,
        payload=payload.model_dump(mode="json"),
        execute=lambda: session.add_track(**payload.model_dump()).as_dict(),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.patch("/tracks/{track_id}")
def update_track(track_id: str, payload: UpdateTrackRequest, request: Request):
    session = session_from_request(request)
    track = None
    if payload.energy is not None:
        track = session.set_energy(track_id, payload.energy)
    if payload.contract_signed is not None:
        track = session.set_contract_signed(track_id, payload.contract_signed)
    if "target_release_date" in payload.model_fields_set:
        track = session.set_target_release_date(track_id, payload.target_release_date)
    if payload.watched is not None:
        current = session.fetch_track(track_id)
        if current is None or current.watched != payload.watched:
            track = session.toggle_watched(track_id)
        else:
            track = current
    if track is None:
        track = session.fetch_track(track_id)
    return success_envelope(track_payload(track), trace_id_from_request(request))


@router.post("/tracks/{track_id}/advance")
def advance_track(track_id: str, request: Request):
    session = session_from_request(request)
    track = session.advance_track(track_id)
    return success_envelope(track_payload(track), trace_id_from_request(request))


@router.post("/tracks/{track_id}/reject")
def reject_track(track_id: str, payload: RejectTrackRequest, request: Request):
    session = session_from_request(request)
    track = session.reject_track(track_id, payload.reason)
    return success_envelope(track_payload(track), trace_id_from_request(request))


@router.post("/tracks/{track_id}/vote")
def cast_vote(track_id: str, payload: VoteRequest, request: Request):
    session = session_from_request(request)
    track = session.cast_vote(track_id, payload.value)
    return success_envelope(track_payload(track), trace_id_from_request(request))


@router.post("/tracks/{track_id}/listen")
def log_listen(track_id: str, request: Request):
    session = session_from_request(request)
    event = session.log_listen(track_id)
    return JSONResponse(status_code=201, content=success_envelope(event, trace_id_from_request(request)))
