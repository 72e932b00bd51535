import pathlib
import sys
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from soundpath.domain import Identity, Role
from soundpath.main import create_app
from soundpath.session import ReviewSession
from soundpath.settings import ReviewSettings
from soundpath.store import store

FIXED_NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def _issue_token(*, secret: str, staff_id: str, is_system_admin: bool = False) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": staff_id,
        "is_system_admin": is_system_admin,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                staff_id = headers.pop("x-staff-id", "staff_owner")
                is_admin = headers.pop("x-admin", "") == "true"
                token = _issue_token(secret=self._jwt_secret, staff_id=str(staff_id), is_system_admin=is_admin)
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", "jwt_test_secret_for_soundpath_suite")
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.setenv("WORKER_TOKEN", "worker_test_token")
    monkeypatch.setenv("HEARTBEAT_ENABLED", "false")
    store.reset()
    store.set_clock(lambda: FIXED_NOW)
    yield
    store.reset()


@pytest.fixture
def ticker() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def label():
    """Label with one subsidiary, an unrelated label, and staff in every role."""
    for staff_id, name, admin in (
        ("staff_owner", "Olive Owner", False),
        ("staff_manager", "Max Manager", False),
        ("staff_scout", "Sam Scout", False),
        ("staff_outsider", "Otto Outsider", False),
        ("staff_admin", "Ada Admin", True),
    ):
        store.create_staff(name=name, email=f"{staff_id}@example.com", is_system_admin=admin, staff_id=staff_id)
    store.create_organization(name="Deep Groove Records", organization_id="org_label")
    store.create_organization(name="Deep Groove Dub", parent_id="org_label", organization_id="org_sub")
    store.create_organization(name="Other Label", organization_id="org_other")
    store.upsert_membership(staff_id="staff_owner", organization_id="org_label", role=Role.OWNER)
    store.upsert_membership(staff_id="staff_manager", organization_id="org_label", role=Role.MANAGER)
    store.upsert_membership(staff_id="staff_scout", organization_id="org_label", role=Role.SCOUT)
    store.upsert_membership(staff_id="staff_owner", organization_id="org_sub", role=Role.OWNER)
    store.upsert_membership(staff_id="staff_outsider", organization_id="org_other", role=Role.OWNER)
    return SimpleNamespace(
        owner="staff_owner",
        manager="staff_manager",
        scout="staff_scout",
        outsider="staff_outsider",
        admin="staff_admin",
        org="org_label",
        sub="org_sub",
        other="org_other",
    )


@pytest.fixture
def make_track():
    def _make(**overrides):
        track = {
            "title": "Night Drive",
            "artist_name": "Kessler",
            "genre": "Tech House",
            "bpm": 126,
        }
        track.update(overrides)
        if "organization_id" not in track and "recipient_user_id" not in track:
            track["organization_id"] = "org_label"
        return store.insert_track(track=track)

    return _make


@pytest.fixture
def open_session(ticker: FakeMonotonic):
    sessions: list[ReviewSession] = []

    def _open(staff_id: str, *, workspace=None, admin: bool = False, env: dict | None = None) -> ReviewSession:
        session = ReviewSession(
            store,
            Identity(staff_id=staff_id, is_system_admin=admin),
            settings=ReviewSettings.from_env(env or {}),
            monotonic=ticker,
        )
        sessions.append(session)
        if workspace is not None or admin:
            session.switch_workspace(workspace)
        return session

    yield _open
    for session in sessions:
        session.close()


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret="jwt_test_secret_for_soundpath_suite")
