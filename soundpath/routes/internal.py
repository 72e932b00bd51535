from __future__ import annotations

from fastapi import APIRouter, Header, Request

from soundpath.pipeline import ReleaseSweeper
from soundpath.routes._deps import trace_id_from_request
from soundpath.schemas import ReleaseSweepRequest, success_envelope
from soundpath.security import verify_worker_token
from soundpath.store import store
from soundpath.usage import UsageLimiter

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/release-sweep")
def internal_release_sweep(
    request: Request,
    payload: ReleaseSweepRequest | None = None,
    x_worker_token: str | None = Header(default=None, alias="x-worker-token"),
):
    verify_worker_token(provided=x_worker_token, cfg=request.app.state.security_cfg)
    sweeper = ReleaseSweeper(store, UsageLimiter(store), today=lambda: store.now().date())
    report = sweeper.sweep_all_workspaces(today=payload.today if payload else None)
    return success_envelope(report.as_dict(), trace_id_from_request(request))
