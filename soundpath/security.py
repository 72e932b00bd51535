from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Any

import jwt

from soundpath.domain import Identity
from soundpath.errors import ApiError


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    admin_claim: str
    worker_token: str

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        issuer = os.environ.get("JWT_ISSUER", "").strip()
        audience = os.environ.get("JWT_AUDIENCE", "").strip()
        shared_secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret) or _env_bool("JWT_REQUIRED", False),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(os.environ.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            admin_claim=os.environ.get("JWT_ADMIN_CLAIM", "is_system_admin").strip() or "is_system_admin",
            worker_token=os.environ.get("WORKER_TOKEN", "").strip(),
        )


def parse_and_validate_bearer_token(
    *,
    authorization: str | None,
    cfg: JwtSecurityConfig,
) -> tuple[Identity, dict[str, Any]]:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")

    try:
        claims = jwt.decode(
            token,
            cfg.shared_secret,
            algorithms=["HS256"],
            audience=cfg.audience or None,
            issuer=cfg.issuer or None,
            options={
                "require": list(cfg.required_claims),
                "verify_aud": bool(cfg.audience),
            },
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("token expired") from None
    except jwt.InvalidAudienceError:
        raise _unauthorized("jwt audience mismatch") from None
    except jwt.InvalidIssuerError:
        raise _unauthorized("jwt issuer mismatch") from None
    except jwt.MissingRequiredClaimError as exc:
        raise _unauthorized(f"missing required claim: {exc.claim}") from None
    except jwt.InvalidTokenError:
        raise _unauthorized("invalid token") from None

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise _unauthorized("missing subject claim")
    return Identity(staff_id=subject, is_system_admin=claims.get(cfg.admin_claim) is True), claims


def verify_worker_token(*, provided: str | None, cfg: JwtSecurityConfig) -> None:
    if not cfg.worker_token:
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="worker token not configured",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), cfg.worker_token.encode("utf-8")):
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="invalid worker token",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
