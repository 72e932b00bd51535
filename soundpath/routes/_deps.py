from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from soundpath.domain import Identity, Track
from soundpath.errors import ApiError
from soundpath.schemas import error_envelope
from soundpath.session import ReviewSession


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def identity_from_request(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="caller identity is required",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
    return identity


def session_from_request(request: Request) -> ReviewSession:
    return request.app.state.sessions.get(identity_from_request(request))


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def track_payload(track: Track | None) -> dict[str, Any] | None:
    return None if track is None else track.as_dict()
