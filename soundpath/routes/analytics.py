from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from soundpath.routes._deps import session_from_request, trace_id_from_request
from soundpath.schemas import InviteStaffRequest, StaffPermissionsRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["analytics"])


@router.get("/artists")
def list_artists(request: Request):
    session = session_from_request(request)
    return success_envelope({"items": session.artist_directory()}, trace_id_from_request(request))


@router.get("/analytics/load")
def my_load(request: Request):
    session = session_from_request(request)
    return success_envelope(session.compute_load().as_dict(), trace_id_from_request(request))


@router.get("/analytics/load/{staff_id}")
def staff_load(staff_id: str, request: Request):
    session = session_from_request(request)
    return success_envelope(session.compute_load(staff_id).as_dict(), trace_id_from_request(request))


@router.get("/analytics/health")
def company_health(request: Request):
    session = session_from_request(request)
    return success_envelope(session.compute_health().as_dict(), trace_id_from_request(request))


@router.get("/analytics/team")
def team_overview(request: Request):
    session = session_from_request(request)
    return success_envelope({"items": session.team_overview()}, trace_id_from_request(request))


@router.get("/usage")
def usage(request: Request):
    session = session_from_request(request)
    return success_envelope(session.usage_report(), trace_id_from_request(request))


@router.post("/staff/invites")
def invite_staff(payload: InviteStaffRequest, request: Request):
    session = session_from_request(request)
    invite = session.invite_staff(payload.email, payload.role)
    return JSONResponse(status_code=201, content=success_envelope(invite, trace_id_from_request(request)))


@router.patch("/staff/{staff_id}/permissions")
def update_staff_permissions(staff_id: str, payload: StaffPermissionsRequest, request: Request):
    session = session_from_request(request)
    membership = session.update_staff_permissions(staff_id, payload.permissions)
    return success_envelope(membership, trace_id_from_request(request))


@router.delete("/staff/{staff_id}")
def deactivate_staff(staff_id: str, request: Request):
    session = session_from_request(request)
    membership = session.deactivate_staff(staff_id)
    return success_envelope(membership, trace_id_from_request(request))
