from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import date
from typing import Any

from soundpath.domain import Identity, OrganizationWorkspace, PersonalWorkspace, Track, Workspace
from soundpath.errors import Forbidden, ScopeResolutionFailed
from soundpath.fatigue import FatigueAnalyzer, HealthReport, LoadReport, staff_metrics
from soundpath.heartbeat import IntervalLoop
from soundpath.notifications import Observable
from soundpath.pipeline import PipelineEngine, ReleaseSweeper, SweepReport
from soundpath.scope import ResolvedScope, ScopeResolver
from soundpath.settings import ReviewSettings
from soundpath.staff import StaffAdmin
from soundpath.sync import SyncCoordinator
from soundpath.tracks import TrackService, artist_directory, quick_stats, upcoming_releases, watched_tracks
from soundpath.usage import UsageLimiter
from soundpath.votes import VoteLedger

logger = logging.getLogger(__name__)


class ReviewSession:
    """One caller identity bound to one active workspace; the surface presentation code talks to."""

    def __init__(
        self,
        store: Any,
        identity: Identity,
        *,
        settings: ReviewSettings | None = None,
        monotonic: Callable[[], float] | None = None,
        limiter: UsageLimiter | None = None,
        defer_change_reload: bool = False,
    ) -> None:
        self.store = store
        self.identity = identity
        self.settings = settings or ReviewSettings.from_env()
        clock = monotonic or time.monotonic
        self.resolver = ScopeResolver(store)
        self.limiter = limiter or UsageLimiter(store, max_age_s=self.settings.usage_recheck_interval_s, clock=clock)
        self.coordinator = SyncCoordinator(
            store,
            focus_cooldown_s=self.settings.sync_focus_cooldown_s,
            read_retries=self.settings.sync_read_retries,
            clock=clock,
            defer_change_reload=defer_change_reload,
        )
        self.ledger = VoteLedger(store, self.coordinator)
        self.pipeline = PipelineEngine(
            store,
            self.coordinator,
            self.limiter,
            personal_require_rejection_reason=self.settings.personal_require_rejection_reason,
        )
        self.sweeper = ReleaseSweeper(store, self.limiter, today=lambda: store.now().date())
        self.analyzer = FatigueAnalyzer(
            store,
            policy=self.settings.fatigue,
            load_ttl_s=self.settings.load_cache_ttl_s,
            health_ttl_s=self.settings.health_cache_ttl_s,
            now=store.now,
            monotonic=clock,
        )
        self.track_service = TrackService(store, self.coordinator, self.limiter)
        self.staff_admin = StaffAdmin(store, self.limiter)
        self.workspace: Workspace | None = None
        self.scope = ResolvedScope.empty()
        self.usage: Observable[dict[str, Any]] = Observable({})
        self._loops: list[IntervalLoop] = []

    @property
    def staff_id(self) -> str:
        return self.identity.staff_id

    @property
    def tracks(self) -> Observable[list[Track]]:
        return self.coordinator.tracks

    @property
    def loading(self) -> Observable[bool]:
        return self.coordinator.loading

    def _activate(self, workspace: Workspace | None) -> ResolvedScope:
        scope = self.resolver.resolve_strict(self.identity, workspace)
        self.workspace = workspace
        self.scope = scope
        self.coordinator.attach(scope)
        return scope

    def switch_workspace(self, workspace: Workspace | None) -> ResolvedScope:
        self.resolver.reset()
        if isinstance(workspace, OrganizationWorkspace):
            membership = self.store.get_active_membership(
                staff_id=self.staff_id,
                organization_id=workspace.organization_id,
            )
            if membership is None:
                raise Forbidden("No active membership found")
            workspace = OrganizationWorkspace(workspace.organization_id, "all")
        if workspace is None and not self.identity.is_system_admin:
            raise Forbidden("the global view is restricted to system administrators")
        try:
            scope = self._activate(workspace)
        except ScopeResolutionFailed:
            self.workspace = None
            self.scope = ResolvedScope.empty()
            self.coordinator.attach(self.scope)
            raise
        logger.info("workspace switched staff_id=%s scope=%s", self.staff_id, scope.filter.cache_key())
        return scope

    def _sync(self) -> ResolvedScope:
        """Re-resolve the active scope so membership and permission changes apply to the next call."""
        if self.scope.is_empty:
            return self.scope
        try:
            fresh = self.resolver.resolve_strict(self.identity, self.workspace)
        except ScopeResolutionFailed as exc:
            logger.warning("workspace access revoked staff_id=%s: %s", self.staff_id, exc.message)
            self.workspace = None
            self.scope = ResolvedScope.empty()
            self.coordinator.attach(self.scope)
            raise
        if fresh.filter != self.scope.filter:
            self.scope = fresh
            self.coordinator.attach(fresh)
        else:
            self.scope = fresh
            self.coordinator.refresh_if_stale()
        return fresh

    def set_subsidiary_filter(self, subsidiary: str) -> ResolvedScope:
        if not isinstance(self.workspace, OrganizationWorkspace):
            raise Forbidden("subsidiary filters apply to organization workspaces only")
        return self._activate(OrganizationWorkspace(self.workspace.organization_id, subsidiary.strip() or "all"))

    def view_activated(self) -> bool:
        self._sync()
        return self.coordinator.view_activated()

    def reload(self) -> list[Track]:
        return self.coordinator.reload()

    def fetch_track(self, track_id: str) -> Track | None:
        self._sync()
        return self.coordinator.reconcile(track_id)

    # pipeline and votes

    def advance_track(self, track_id: str) -> Track | None:
        self._sync()
        return self.pipeline.advance(self.scope, track_id)

    def reject_track(self, track_id: str, reason: str | None = None) -> Track | None:
        self._sync()
        return self.pipeline.reject(self.scope, track_id, reason)

    def cast_vote(self, track_id: str, value: int) -> Track | None:
        self._sync()
        return self.ledger.cast_vote(self.scope, track_id, self.staff_id, value)

    def sweep_releases(self, today: date | None = None) -> SweepReport:
        report = self.sweeper.sweep_for_staff(self.staff_id, today=today)
        if report.moved_count and not self.scope.is_empty:
            self.coordinator.reload()
        return report

    # intake and edits

    def add_track(self, **fields: Any) -> Track:
        self._sync()
        return self.track_service.add_track(self.scope, self.staff_id, **fields)

    def set_energy(self, track_id: str, energy: int) -> Track | None:
        self._sync()
        return self.track_service.set_energy(self.scope, track_id, energy)

    def set_contract_signed(self, track_id: str, signed: bool) -> Track | None:
        self._sync()
        return self.track_service.set_contract_signed(self.scope, track_id, signed)

    def set_target_release_date(self, track_id: str, target: date | None) -> Track | None:
        self._sync()
        return self.track_service.set_target_release_date(self.scope, track_id, target)

    def toggle_watched(self, track_id: str) -> Track | None:
        self._sync()
        return self.track_service.toggle_watched(self.scope, track_id)

    def log_listen(self, track_id: str) -> dict[str, Any]:
        self._sync()
        return self.track_service.log_listen(self.scope, self.staff_id, track_id)

    # analytics

    def _require_metrics(self) -> None:
        if not self.scope.permissions.can_view_metrics:
            raise Forbidden("viewing staff metrics is not permitted", permission="can_view_metrics")

    def compute_load(self, staff_id: str | None = None) -> LoadReport:
        self._sync()
        if self.scope.is_empty:
            raise ScopeResolutionFailed("no workspace selected")
        target = staff_id or self.staff_id
        if target != self.staff_id:
            self._require_metrics()
        return self.analyzer.compute_load(target, self.scope.organization_id)

    def compute_health(self) -> HealthReport:
        self._sync()
        organization_id = self.scope.organization_id
        if organization_id is None:
            raise Forbidden("company health is only available inside an organization")
        self._require_metrics()
        return self.analyzer.compute_health(organization_id)

    def team_overview(self) -> list[dict[str, Any]]:
        self._sync()
        organization_id = self.scope.organization_id
        if organization_id is None:
            raise Forbidden("team overview is only available inside an organization")
        self._require_metrics()
        tracks = self.tracks.value
        overview = []
        for row in self.store.list_memberships(organization_id=organization_id):
            member_id = row["staff_id"]
            staff = self.store.get_staff(member_id) or {}
            overview.append(
                {
                    "staff_id": member_id,
                    "name": staff.get("name", ""),
                    "role": row["role"],
                    "load": self.analyzer.compute_load(member_id, organization_id).as_dict(),
                    "weekly_listens": self.analyzer.weekly_listens(member_id, organization_id),
                    "metrics": staff_metrics(member_id, tracks),
                }
            )
        return overview

    def staff_metrics(self, staff_id: str | None = None) -> dict[str, Any]:
        self._sync()
        return staff_metrics(staff_id or self.staff_id, self.tracks.value)

    def quick_stats(self) -> dict[str, int]:
        self._sync()
        return quick_stats(self.tracks.value)

    def upcoming_releases(self) -> list[Track]:
        self._sync()
        return upcoming_releases(self.tracks.value)

    def watched_tracks(self) -> list[Track]:
        self._sync()
        return watched_tracks(self.tracks.value)

    def artist_directory(self) -> list[dict[str, Any]]:
        self._sync()
        return artist_directory(self.tracks.value)

    def usage_report(self) -> dict[str, Any]:
        self._sync()
        report = self.limiter.report(self.scope.organization_id)
        self.usage.set(report)
        return report

    # staff administration

    def invite_staff(self, email: str, role: str) -> dict[str, Any]:
        self._sync()
        return self.staff_admin.invite_staff(self.scope, self.staff_id, email=email, role=role)

    def update_staff_permissions(self, staff_id: str, permissions: dict[str, bool]) -> dict[str, Any]:
        self._sync()
        return self.staff_admin.update_permissions(self.scope, staff_id, permissions)

    def deactivate_staff(self, staff_id: str) -> dict[str, Any]:
        self._sync()
        return self.staff_admin.deactivate(self.scope, self.staff_id, staff_id)

    # background loops

    def _recheck_usage(self) -> None:
        organization_id = self.scope.organization_id
        if organization_id is not None:
            self.usage.set(self.limiter.usage_report(organization_id))

    def start_heartbeats(self) -> None:
        if self._loops:
            return
        self._loops = [
            IntervalLoop(
                name=f"release-sweep:{self.staff_id}",
                interval_s=self.settings.release_sweep_interval_s,
                fn=self.sweep_releases,
            ),
            IntervalLoop(
                name=f"usage-recheck:{self.staff_id}",
                interval_s=self.settings.usage_recheck_interval_s,
                fn=self._recheck_usage,
            ),
        ]
        for loop in self._loops:
            loop.start()

    def close(self) -> None:
        for loop in self._loops:
            loop.stop()
        self._loops = []
        self.coordinator.close()
        self.workspace = None
        self.scope = ResolvedScope.empty()


class SessionRegistry:
    """Sessions keyed by staff id for the HTTP process.

    Registry sessions defer change-feed reloads to their next call, so a write
    costs one stale flag per open session instead of one reload each. Sessions
    idle for longer than ``idle_ttl_s`` are closed on the next lookup.
    """

    def __init__(
        self,
        store: Any,
        *,
        settings: ReviewSettings | None = None,
        limiter: UsageLimiter | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or ReviewSettings.from_env()
        self.limiter = limiter or UsageLimiter(store, max_age_s=self.settings.usage_recheck_interval_s)
        self.idle_ttl_s = self.settings.session_idle_ttl_s
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._sessions: dict[str, ReviewSession] = {}
        self._last_used: dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _evict_idle(self, now: float) -> list[ReviewSession]:
        expired = [staff_id for staff_id, used in self._last_used.items() if now - used >= self.idle_ttl_s]
        evicted = []
        for staff_id in expired:
            self._last_used.pop(staff_id, None)
            session = self._sessions.pop(staff_id, None)
            if session is not None:
                evicted.append(session)
        return evicted

    def get(self, identity: Identity) -> ReviewSession:
        now = self._clock()
        with self._lock:
            evicted = self._evict_idle(now)
            session = self._sessions.get(identity.staff_id)
            stale = None
            if session is not None and session.identity != identity:
                stale, session = session, None
            if session is None:
                session = ReviewSession(
                    self.store,
                    identity,
                    settings=self.settings,
                    limiter=self.limiter,
                    defer_change_reload=True,
                )
                self._sessions[identity.staff_id] = session
                fresh = True
            else:
                fresh = False
            self._last_used[identity.staff_id] = now
        for old in evicted:
            old.close()
        if evicted:
            logger.info("closed idle sessions count=%s", len(evicted))
        if stale is not None:
            stale.close()
        if not fresh:
            return session
        try:
            session.switch_workspace(PersonalWorkspace(identity.staff_id))
        except ScopeResolutionFailed:
            with self._lock:
                self._sessions.pop(identity.staff_id, None)
                self._last_used.pop(identity.staff_id, None)
            session.close()
            raise
        return session

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._last_used.clear()
        for session in sessions:
            session.close()
