from datetime import UTC, datetime, timedelta

import jwt
import pytest

from soundpath.errors import ApiError
from soundpath.security import JwtSecurityConfig, parse_and_validate_bearer_token, verify_worker_token


def _cfg(**overrides) -> JwtSecurityConfig:
    values = {
        "enabled": True,
        "issuer": "test-issuer",
        "audience": "test-audience",
        "shared_secret": "jwt_test_secret_for_soundpath_suite",
        "required_claims": ["sub", "exp"],
        "admin_claim": "is_system_admin",
        "worker_token": "worker_test_token",
    }
    values.update(overrides)
    return JwtSecurityConfig(**values)


def _token(secret: str = "jwt_test_secret_for_soundpath_suite", **claims) -> str:
    payload = {
        "sub": "staff_owner",
        "iss": "test-issuer",
        "aud": "test-audience",
        "exp": int((datetime.now(UTC) + timedelta(minutes=5)).timestamp()),
    }
    payload.update(claims)
    return jwt.encode({k: v for k, v in payload.items() if v is not None}, secret, algorithm="HS256")


def test_valid_token_yields_identity():
    identity, claims = parse_and_validate_bearer_token(
        authorization=f"Bearer {_token(is_system_admin=True)}",
        cfg=_cfg(),
    )

    assert identity.staff_id == "staff_owner"
    assert identity.is_system_admin is True
    assert claims["iss"] == "test-issuer"


def test_admin_claim_must_be_literal_true():
    identity, _ = parse_and_validate_bearer_token(
        authorization=f"Bearer {_token(is_system_admin='yes')}",
        cfg=_cfg(),
    )

    assert identity.is_system_admin is False


@pytest.mark.parametrize(
    ("authorization", "message"),
    [
        (None, "missing Authorization bearer token"),
        ("Token abc", "invalid Authorization header"),
        ("Bearer ", "empty bearer token"),
    ],
)
def test_malformed_headers_are_unauthorized(authorization, message):
    with pytest.raises(ApiError) as exc:
        parse_and_validate_bearer_token(authorization=authorization, cfg=_cfg())

    assert exc.value.code == "AUTH_UNAUTHORIZED"
    assert exc.value.message == message


@pytest.mark.parametrize(
    ("token_kwargs", "message"),
    [
        ({"exp": int((datetime.now(UTC) - timedelta(minutes=5)).timestamp())}, "token expired"),
        ({"aud": "someone-else"}, "jwt audience mismatch"),
        ({"iss": "elsewhere"}, "jwt issuer mismatch"),
        ({"exp": None}, "missing required claim: exp"),
        ({"secret": "wrong_secret"}, "invalid token"),
    ],
)
def test_invalid_tokens_are_unauthorized(token_kwargs, message):
    with pytest.raises(ApiError) as exc:
        parse_and_validate_bearer_token(authorization=f"Bearer {_token(**token_kwargs)}", cfg=_cfg())

    assert exc.value.http_status == 401
    assert exc.value.message == message


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub, exp, iat")
    monkeypatch.setenv("JWT_ADMIN_CLAIM", "sp_admin")

    cfg = JwtSecurityConfig.from_env()

    assert cfg.enabled is True
    assert cfg.required_claims == ["sub", "exp", "iat"]
    assert cfg.admin_claim == "sp_admin"
    assert cfg.worker_token == "worker_test_token"


def test_worker_token_checks():
    verify_worker_token(provided="worker_test_token", cfg=_cfg())

    with pytest.raises(ApiError) as wrong:
        verify_worker_token(provided="nope", cfg=_cfg())
    with pytest.raises(ApiError) as unconfigured:
        verify_worker_token(provided="worker_test_token", cfg=_cfg(worker_token=""))

    assert wrong.value.code == "AUTH_FORBIDDEN"
    assert unconfigured.value.message == "worker token not configured"
