from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field


class WorkspaceRequest(BaseModel):
    kind: Literal["personal", "organization", "global"]
    organization_id: str | None = None
    subsidiary: str = "all"


class CreateTrackRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    artist_name: str = Field(min_length=1, max_length=300)
    genre: str | None = None
    bpm: int | None = Field(default=None, ge=1, le=400)
    link: str = ""


class UpdateTrackRequest(BaseModel):
    energy: int | None = Field(default=None, ge=0, le=5)
    contract_signed: bool | None = None
    target_release_date: date | None = None
    watched: bool | None = None


class RejectTrackRequest(BaseModel):
    reason: str = ""


class VoteRequest(BaseModel):
    value: Literal[-1, 0, 1]


class InviteStaffRequest(BaseModel):
    email: str = Field(min_length=3)
    role: Literal["Owner", "Manager", "Scout"] = "Scout"


class StaffPermissionsRequest(BaseModel):
    permissions: dict[str, bool]


class ReleaseSweepRequest(BaseModel):
    today: date | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
