from datetime import timedelta

import pytest

from soundpath.domain import Track
from soundpath.fatigue import (
    FATIGUED,
    OPTIMAL,
    SLEEPING,
    WARNING,
    FatigueAnalyzer,
    relative_percentage,
    staff_metrics,
    window_status,
    worst_status,
)
from soundpath.settings import FatiguePolicy
from soundpath.store import store


def _analyzer(ticker, **kwargs):
    return FatigueAnalyzer(store, now=store.now, monotonic=ticker, **kwargs)


def _demos(make_track, count, organization_id="org_label", **overrides):
    for idx in range(count):
        make_track(title=f"Demo {idx}", organization_id=organization_id, **overrides)


def _listens(staff_id, count, organization_id="org_label", listened_at=None):
    for idx in range(count):
        store.append_listen_event(
            staff_id=staff_id,
            track_id=f"trk_{idx}",
            organization_id=organization_id,
            listened_at=listened_at,
        )


def test_relative_percentage_clamps_and_handles_zero_demand():
    assert relative_percentage(60, 50) == 100
    assert relative_percentage(40, 50) == 80
    assert relative_percentage(0, 0) == 100


def test_window_status_precedence():
    assert window_status(listens=120, threshold=100, percentage=10, any_demand=True) == FATIGUED
    assert window_status(listens=10, threshold=100, percentage=20, any_demand=True) == SLEEPING
    assert window_status(listens=10, threshold=100, percentage=20, any_demand=False) == OPTIMAL
    assert window_status(listens=95, threshold=100, percentage=100, any_demand=True) == WARNING
    assert worst_status([OPTIMAL, WARNING, SLEEPING]) == WARNING
    assert worst_status([]) == OPTIMAL


def test_capped_listens_over_demand_with_org_threshold_is_fatigued(label, make_track, ticker):
    store.update_organization(label.org, fatigue_policy={"daily_threshold": 60})
    _demos(make_track, 50)
    _listens(label.scout, 75)

    report = _analyzer(ticker).compute_load(label.scout, label.org)

    day = report.windows["day"]
    assert day.listens == 75
    assert day.capped_listens == 60
    assert day.demand == 50
    assert day.percentage == 100
    assert day.status == FATIGUED
    assert report.status == FATIGUED


def test_same_load_under_default_thresholds_is_optimal(label, make_track, ticker):
    _demos(make_track, 50)
    _listens(label.scout, 75)

    report = _analyzer(ticker).compute_load(label.scout, label.org)

    assert report.windows["day"].threshold == 100
    assert report.status == OPTIMAL


def test_low_coverage_is_sleeping(label, make_track, ticker):
    _demos(make_track, 50)
    _listens(label.scout, 10)

    report = _analyzer(ticker).compute_load(label.scout, label.org)

    assert report.windows["day"].percentage == 20
    assert report.status == SLEEPING


def test_near_threshold_is_warning(label, make_track, ticker):
    _demos(make_track, 50)
    _listens(label.scout, 95)

    report = _analyzer(ticker).compute_load(label.scout, label.org)

    assert report.windows["day"].status == WARNING
    assert report.status == WARNING


def test_no_demand_reports_full_coverage(label, ticker):
    report = _analyzer(ticker).compute_load(label.scout, label.org)

    assert {w.percentage for w in report.windows.values()} == {100}
    assert report.status == OPTIMAL


def test_windows_start_at_midnight_and_reach_back(label, make_track, ticker):
    last_week = (store.now() - timedelta(days=3)).isoformat()
    make_track(organization_id=label.org, created_at=last_week)
    _listens(label.scout, 4, listened_at=last_week)
    _listens(label.scout, 2)

    report = _analyzer(ticker).compute_load(label.scout, label.org)

    assert (report.windows["day"].listens, report.windows["day"].demand) == (2, 0)
    assert (report.windows["week"].listens, report.windows["week"].demand) == (6, 1)
    assert (report.windows["month"].listens, report.windows["month"].demand) == (6, 1)


def test_listens_are_counted_per_workspace(label, make_track, ticker):
    _demos(make_track, 10)
    _listens(label.scout, 10, organization_id=label.other)
    _listens(label.scout, 3, organization_id=None)

    analyzer = _analyzer(ticker)

    assert analyzer.compute_load(label.scout, label.org).windows["day"].listens == 0
    assert analyzer.compute_load(label.scout, None).windows["day"].listens == 3


def test_load_is_cached_until_ttl(label, make_track, ticker):
    _demos(make_track, 10)
    analyzer = _analyzer(ticker)

    first = analyzer.compute_load(label.scout, label.org)
    _listens(label.scout, 10)
    ticker.advance(29)
    assert analyzer.compute_load(label.scout, label.org) is first

    ticker.advance(1)
    refreshed = analyzer.compute_load(label.scout, label.org)
    assert refreshed.windows["day"].listens == 10


def test_cache_is_keyed_by_workspace(label, ticker):
    analyzer = _analyzer(ticker)

    org_report = analyzer.compute_load(label.scout, label.org)
    personal_report = analyzer.compute_load(label.scout, None)

    assert org_report.organization_id == label.org
    assert personal_report.organization_id is None


def test_company_health_penalizes_fatigue_and_understaffing(label, make_track, ticker):
    _demos(make_track, 200)
    _listens(label.scout, 1000)

    health = _analyzer(ticker).compute_health(label.org)

    assert health.staff_count == 3
    assert health.daily_demo_volume == 200
    assert health.demos_per_staff == pytest.approx(66.67)
    assert health.staffing_alert is True
    assert health.fatigued_staff_count == 1
    assert health.health_score == 53


def test_healthy_company_scores_100_and_is_cached(label, make_track, ticker):
    _demos(make_track, 30)
    analyzer = _analyzer(ticker)

    first = analyzer.compute_health(label.org)
    assert first.health_score == 100
    assert first.staffing_alert is False

    _demos(make_track, 300)
    ticker.advance(59)
    assert analyzer.compute_health(label.org) is first
    ticker.advance(1)
    assert analyzer.compute_health(label.org).staffing_alert is True


def test_every_member_fatigued_with_staffing_alert(label, make_track, ticker):
    store.update_organization(label.org, fatigue_policy={"weekly_threshold": 1, "daily_cap": 1})
    _demos(make_track, 10)
    for staff_id in (label.owner, label.manager, label.scout):
        _listens(staff_id, 1)

    health = _analyzer(ticker, policy=FatiguePolicy()).compute_health(label.org)

    assert health.fatigued_staff_count == 3
    assert health.health_score == 20


def test_staff_metrics_participation_and_energy():
    def _track(track_id, phase, energy, voters):
        row = {
            "id": track_id,
            "title": track_id,
            "artist_name": "A",
            "phase": phase,
            "energy": energy,
            "created_at": "2026-03-01T00:00:00+00:00",
        }
        return Track.from_row(row, [{"staff_id": v, "value": 1} for v in voters])

    tracks = [
        _track("t1", "team_review", 4, ["staff_a"]),
        _track("t2", "contracting", 2, []),
        _track("t3", "vault", 0, ["staff_a", "staff_b"]),
        _track("t4", "inbox", 0, []),
    ]

    metrics = staff_metrics("staff_a", tracks)

    assert metrics["total_tracks_in_review"] == 3
    assert metrics["total_tracks_voted"] == 2
    assert metrics["voting_participation_rate"] == 66.7
    assert metrics["avg_energy_assigned"] == 3.0
