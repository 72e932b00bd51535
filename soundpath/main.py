from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from soundpath.domain import Identity
from soundpath.errors import ApiError
from soundpath.heartbeat import IntervalLoop
from soundpath.pipeline import ReleaseSweeper
from soundpath.routes import analytics, internal, tracks
from soundpath.routes._deps import error_response, trace_id_from_request
from soundpath.schemas import success_envelope
from soundpath.security import JwtSecurityConfig, parse_and_validate_bearer_token
from soundpath.session import SessionRegistry
from soundpath.settings import ReviewSettings
from soundpath.store import store
from soundpath.usage import UsageLimiter

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _background_loops(settings: ReviewSettings, limiter: UsageLimiter) -> list[IntervalLoop]:
    sweeper = ReleaseSweeper(store, limiter, today=lambda: store.now().date())

    return [
        IntervalLoop(
            name="release-sweep",
            interval_s=settings.release_sweep_interval_s,
            fn=sweeper.sweep_all_workspaces,
        ),
        IntervalLoop(
            name="usage-recheck",
            interval_s=settings.usage_recheck_interval_s,
            fn=limiter.refresh_all,
        ),
    ]


def create_app() -> FastAPI:
    settings = ReviewSettings.from_env()
    security_cfg = JwtSecurityConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        limiter = app.state.usage_limiter
        loops = _background_loops(settings, limiter) if settings.heartbeat_enabled else []
        for loop in loops:
            loop.start()
        logger.info("SoundPath review API started heartbeats=%s", len(loops))
        yield
        for loop in loops:
            loop.stop()
        app.state.sessions.close_all()
        logger.info("SoundPath review API stopped")

    app = FastAPI(title="SoundPath Review API", version="0.1.0", lifespan=lifespan)
    app.state.security_cfg = security_cfg
    app.state.settings = settings
    app.state.usage_limiter = UsageLimiter(store, max_age_s=settings.usage_recheck_interval_s)
    app.state.sessions = SessionRegistry(store, settings=settings, limiter=app.state.usage_limiter)

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.identity = None
        path = request.url.path
        try:
            if path.startswith("/api/v1/") and not path.startswith("/api/v1/internal/") and path != "/api/v1/health":
                if security_cfg.enabled:
                    identity, _claims = parse_and_validate_bearer_token(
                        authorization=request.headers.get("Authorization"),
                        cfg=security_cfg,
                    )
                    request.state.identity = identity
                else:
                    staff_id = request.headers.get("x-staff-id", "").strip()
                    request.state.identity = Identity(staff_id=staff_id) if staff_id else None
            response = await call_next(request)
        except ApiError as exc:
            logger.warning("request blocked path=%s code=%s", path, exc.code)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.error_class == "security_sensitive":
            logger.warning("security rejection path=%s code=%s", request.url.path, exc.code)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(tracks.router)
    app.include_router(analytics.router)
    app.include_router(internal.router)
    return app


configure_logging()
app = create_app()
