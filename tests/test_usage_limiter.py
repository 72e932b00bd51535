import logging

import pytest

from soundpath.errors import ApiError, QuotaExceeded, TransientStoreError
from soundpath.store import store
from soundpath.usage import LIMIT_MESSAGES, UsageLimiter


def test_personal_workspace_is_never_metered(label, monkeypatch):
    def _fail(**kwargs):
        raise AssertionError("personal workspaces must not hit the usage check")

    monkeypatch.setattr(store, "check_usage_limit", _fail)

    UsageLimiter(store).ensure_within_limit(None, "tracks")


def test_limit_reached_raises_with_upgrade_message(label, make_track):
    store.update_organization(label.org, plan_limits={"max_tracks": 2})
    limiter = UsageLimiter(store)

    make_track(organization_id=label.org)
    limiter.ensure_within_limit(label.org, "tracks")
    make_track(organization_id=label.org)

    with pytest.raises(QuotaExceeded) as exc:
        limiter.ensure_within_limit(label.org, "tracks")

    assert exc.value.message == "Track limit reached. Please upgrade your plan to add more tracks."
    assert exc.value.resource == "tracks"


@pytest.mark.parametrize("limits", [{}, {"max_tracks": -1}])
def test_missing_or_negative_limit_is_unlimited(label, make_track, limits):
    store.update_organization(label.org, plan_limits=limits)
    for _ in range(3):
        make_track(organization_id=label.org)

    UsageLimiter(store).ensure_within_limit(label.org, "tracks")


def test_staff_usage_counts_members_and_pending_invites(label):
    store.update_organization(label.org, plan_limits={"max_staff": 4})
    store.upsert_invite(
        organization_id=label.org,
        email="new@example.com",
        role="Scout",
        permissions={},
        invited_by=label.owner,
    )

    with pytest.raises(QuotaExceeded) as exc:
        UsageLimiter(store).ensure_within_limit(label.org, "staff")

    assert exc.value.message == LIMIT_MESSAGES["staff"]


def test_unknown_resource_is_a_programming_error(label):
    with pytest.raises(ValueError):
        UsageLimiter(store).ensure_within_limit(label.org, "playlists")


def test_store_failure_is_transient(label, monkeypatch):
    def _fail(**kwargs):
        raise ConnectionError("store offline")

    monkeypatch.setattr(store, "check_usage_limit", _fail)

    with pytest.raises(TransientStoreError) as exc:
        UsageLimiter(store).ensure_within_limit(label.org, "contacts")
    assert exc.value.retryable is True


def test_unknown_organization_propagates_as_api_error(label):
    with pytest.raises(ApiError) as exc:
        UsageLimiter(store).ensure_within_limit("org_missing", "tracks")

    assert exc.value.code == "ORGANIZATION_NOT_FOUND"


def test_usage_report_flags_warning_and_limit(label, make_track):
    store.update_organization(label.org, plan_limits={"max_tracks": 6, "max_vault_tracks": 100})
    for _ in range(3):
        make_track(organization_id=label.org)
    limiter = UsageLimiter(store)

    report = limiter.usage_report(label.org)

    assert report["tracks"] == {
        "limit": 6,
        "current": 3,
        "remaining": 3,
        "percentage": 50,
        "at_limit": False,
        "warning": True,
    }
    assert report["vault_tracks"]["warning"] is False
    assert report["contacts"]["remaining"] == "unlimited"
    assert limiter.cached_report(label.org) == report
    assert limiter.usage_report(None) == {}


def test_programming_errors_in_usage_check_are_not_masked(label, monkeypatch):
    def _broken(**kwargs):
        raise KeyError("plan_limits")

    monkeypatch.setattr(store, "check_usage_limit", _broken)

    with pytest.raises(KeyError):
        UsageLimiter(store).ensure_within_limit(label.org, "tracks")


def test_cached_report_is_served_until_the_store_changes(label, make_track, monkeypatch, ticker):
    limiter = UsageLimiter(store, max_age_s=60, clock=ticker)
    built = limiter.usage_report(label.org)

    def _offline(**kwargs):
        raise AssertionError("a fresh cached report must not hit the store")

    with monkeypatch.context() as patch:
        patch.setattr(store, "get_usage", _offline)
        assert limiter.report(label.org) is built

    make_track(organization_id=label.org)

    assert limiter.cached_report(label.org) is None
    assert limiter.report(label.org)["tracks"]["current"] == built["tracks"]["current"] + 1


def test_cached_report_expires_after_max_age(label, ticker):
    limiter = UsageLimiter(store, max_age_s=60, clock=ticker)
    limiter.usage_report(label.org)

    ticker.advance(59)
    assert limiter.cached_report(label.org) is not None
    ticker.advance(1)
    assert limiter.cached_report(label.org) is None


def test_refresh_all_rebuilds_every_organization_and_logs_limits(label, make_track, caplog):
    store.update_organization(label.org, plan_limits={"max_tracks": 1})
    make_track(organization_id=label.org)
    limiter = UsageLimiter(store)

    with caplog.at_level(logging.WARNING, logger="soundpath.usage"):
        reports = limiter.refresh_all()

    assert set(reports) == {label.org, label.sub, label.other}
    assert reports[label.org]["tracks"]["at_limit"] is True
    assert limiter.cached_report(label.other) == reports[label.other]
    assert "usage at limit organization_id=org_label resource=tracks" in caplog.text
