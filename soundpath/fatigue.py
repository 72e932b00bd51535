from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from soundpath.cache import TtlCache
from soundpath.domain import Phase, ScopeFilter, Track
from soundpath.settings import FatiguePolicy

logger = logging.getLogger(__name__)

FATIGUED = "Fatigued"
WARNING = "Warning"
SLEEPING = "Sleeping"
OPTIMAL = "Optimal"

# worst first
STATUS_PRECEDENCE: tuple[str, ...] = (FATIGUED, WARNING, SLEEPING, OPTIMAL)

WINDOW_DAYS: dict[str, int] = {"day": 0, "week": 7, "month": 30}
SLEEPING_BELOW_PCT = 80
WARNING_RATIO = 0.9
FATIGUE_PENALTY = 50
STAFFING_ALERT_PENALTY = 30


@dataclass(frozen=True)
class WindowLoad:
    listens: int
    capped_listens: int
    demand: int
    percentage: int
    threshold: int
    status: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "listens": self.listens,
            "capped_listens": self.capped_listens,
            "demand": self.demand,
            "percentage": self.percentage,
            "threshold": self.threshold,
            "status": self.status,
        }


@dataclass(frozen=True)
class LoadReport:
    staff_id: str
    organization_id: str | None
    windows: dict[str, WindowLoad] = field(default_factory=dict)
    status: str = OPTIMAL

    def as_dict(self) -> dict[str, Any]:
        return {
            "staff_id": self.staff_id,
            "organization_id": self.organization_id,
            "status": self.status,
            "windows": {name: w.as_dict() for name, w in self.windows.items()},
        }


@dataclass(frozen=True)
class HealthReport:
    organization_id: str
    staff_count: int
    daily_demo_volume: int
    demos_per_staff: float
    expectation_cap: int
    staffing_alert: bool
    fatigued_staff_count: int
    health_score: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "staff_count": self.staff_count,
            "daily_demo_volume": self.daily_demo_volume,
            "demos_per_staff": self.demos_per_staff,
            "expectation_cap": self.expectation_cap,
            "staffing_alert": self.staffing_alert,
            "fatigued_staff_count": self.fatigued_staff_count,
            "health_score": self.health_score,
        }


def relative_percentage(capped_listens: int, demand: int) -> int:
    if demand <= 0:
        return 100
    return min(100, round(capped_listens / demand * 100))


def window_status(*, listens: int, threshold: int, percentage: int, any_demand: bool) -> str:
    if listens >= threshold:
        return FATIGUED
    if percentage < SLEEPING_BELOW_PCT and any_demand:
        return SLEEPING
    if listens >= threshold * WARNING_RATIO:
        return WARNING
    return OPTIMAL


def worst_status(statuses: list[str]) -> str:
    for status in STATUS_PRECEDENCE:
        if status in statuses:
            return status
    return OPTIMAL


class FatigueAnalyzer:
    """Listening load per staff member and company health per organization, both TTL cached."""

    def __init__(
        self,
        store: Any,
        *,
        policy: FatiguePolicy | None = None,
        load_ttl_s: float = 30.0,
        health_ttl_s: float = 60.0,
        now: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or FatiguePolicy()
        self._now = now or (lambda: datetime.now(UTC))
        self._load_cache: TtlCache[LoadReport] = TtlCache(ttl_s=load_ttl_s, clock=monotonic)
        self._health_cache: TtlCache[HealthReport] = TtlCache(ttl_s=health_ttl_s, clock=monotonic)

    def policy_for(self, organization_id: str | None) -> FatiguePolicy:
        if organization_id is None:
            return self.policy
        org = self.store.get_organization(organization_id) or {}
        return self.policy.override(org.get("fatigue_policy"))

    def _window_starts(self) -> dict[str, datetime]:
        now = self._now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return {name: midnight - timedelta(days=days) for name, days in WINDOW_DAYS.items()}

    def compute_load(self, staff_id: str, organization_id: str | None) -> LoadReport:
        return self._load_cache.get_or_compute(
            (organization_id, staff_id),
            lambda: self._compute_load(staff_id, organization_id),
        )

    def _compute_load(self, staff_id: str, organization_id: str | None) -> LoadReport:
        policy = self.policy_for(organization_id)
        if organization_id is None:
            demand_scope = ScopeFilter.personal(staff_id)
        else:
            demand_scope = ScopeFilter.organizations([organization_id])
        caps = {"day": policy.daily_cap, "week": policy.daily_cap * 7, "month": policy.daily_cap * 30}
        thresholds = {
            "day": policy.daily_threshold,
            "week": policy.weekly_threshold,
            "month": policy.monthly_threshold,
        }

        raw: dict[str, tuple[int, int]] = {}
        for name, since in self._window_starts().items():
            listens = self.store.count_listen_events(staff_id=staff_id, organization_id=organization_id, since=since)
            demand = self.store.count_tracks_created(scope=demand_scope, since=since)
            raw[name] = (int(listens), int(demand))
        any_demand = any(demand > 0 for _, demand in raw.values())

        windows = {}
        for name, (listens, demand) in raw.items():
            capped = min(listens, caps[name])
            percentage = relative_percentage(capped, demand)
            windows[name] = WindowLoad(
                listens=listens,
                capped_listens=capped,
                demand=demand,
                percentage=percentage,
                threshold=thresholds[name],
                status=window_status(
                    listens=listens,
                    threshold=thresholds[name],
                    percentage=percentage,
                    any_demand=any_demand,
                ),
            )
        report = LoadReport(
            staff_id=staff_id,
            organization_id=organization_id,
            windows=windows,
            status=worst_status([w.status for w in windows.values()]),
        )
        if report.status == FATIGUED:
            logger.info("staff fatigued staff_id=%s organization_id=%s", staff_id, organization_id)
        return report

    def compute_health(self, organization_id: str) -> HealthReport:
        return self._health_cache.get_or_compute(organization_id, lambda: self._compute_health(organization_id))

    def _compute_health(self, organization_id: str) -> HealthReport:
        policy = self.policy_for(organization_id)
        starts = self._window_starts()
        staff_count = len(self.store.list_memberships(organization_id=organization_id))
        divisor = staff_count or 1
        daily_demos = self.store.count_tracks_created(
            scope=ScopeFilter.organizations([organization_id]),
            since=starts["day"],
        )
        demos_per_staff = daily_demos / divisor
        staffing_alert = demos_per_staff > policy.daily_cap
        weekly = self.store.listen_counts_by_staff(organization_id=organization_id, since=starts["week"])
        fatigued = sum(1 for count in weekly.values() if count >= policy.weekly_threshold)
        score = 100 - fatigued / divisor * FATIGUE_PENALTY - (STAFFING_ALERT_PENALTY if staffing_alert else 0)
        return HealthReport(
            organization_id=organization_id,
            staff_count=divisor,
            daily_demo_volume=daily_demos,
            demos_per_staff=round(demos_per_staff, 2),
            expectation_cap=policy.daily_cap,
            staffing_alert=staffing_alert,
            fatigued_staff_count=fatigued,
            health_score=round(max(0.0, min(100.0, score))),
        )

    def weekly_listens(self, staff_id: str, organization_id: str | None) -> int:
        return int(
            self.store.count_listen_events(
                staff_id=staff_id,
                organization_id=organization_id,
                since=self._window_starts()["week"],
            )
        )


REVIEWED_PHASES = frozenset({Phase.TEAM_REVIEW, Phase.CONTRACTING, Phase.VAULT})


def staff_metrics(staff_id: str, tracks: list[Track]) -> dict[str, Any]:
    rated = [t for t in tracks if t.energy > 0]
    in_review = [t for t in tracks if t.phase in REVIEWED_PHASES]
    voted = [t for t in tracks if staff_id in t.votes_by_voter]
    avg_energy = round(sum(t.energy for t in rated) / len(rated), 1) if rated else 0.0
    participation = round(len(voted) / len(in_review) * 100, 1) if in_review else 0.0
    return {
        "avg_energy_assigned": avg_energy,
        "voting_participation_rate": participation,
        "total_tracks_voted": len(voted),
        "total_tracks_in_review": len(in_review),
    }
