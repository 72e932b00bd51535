from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from soundpath.domain import Phase, Role, ScopeFilter, Track, parse_date
from soundpath.errors import Forbidden, GateError, QuotaExceeded, track_not_found
from soundpath.scope import ResolvedScope
from soundpath.sync import SyncCoordinator
from soundpath.usage import UsageLimiter

logger = logging.getLogger(__name__)

NO_REASON_PLACEHOLDER = "No reason provided"

# source phase -> permission needed to move a track out of it
HOP_PERMISSIONS: dict[Phase, str] = {
    Phase.INBOX: "can_advance_lobby",
    Phase.SECOND_LISTEN: "can_advance_office",
    Phase.TEAM_REVIEW: "can_advance_office",
    Phase.CONTRACTING: "can_advance_contract",
    Phase.UPCOMING: "can_advance_contract",
}


def apply_track_update(
    store: Any,
    scope_filter: ScopeFilter,
    track_id: str,
    updates: dict[str, Any],
    expected: dict[str, Any],
) -> None:
    """Write ``updates`` only if the row still matches what the caller read."""
    if store.update_track(scope=scope_filter, track_id=track_id, updates=updates, expected=expected) is not None:
        return
    current = store.get_track(scope=scope_filter, track_id=track_id)
    if current is None:
        raise track_not_found(track_id)
    if current.get("archived"):
        raise GateError(GateError.TRACK_ARCHIVED, "track was archived since it was loaded")
    raise GateError(GateError.TRACK_CHANGED, "track changed since it was loaded; reload and try again")


class PipelineEngine:
    """Fixed forward-only phase machine with gates and an absorbing archived flag."""

    def __init__(
        self,
        store: Any,
        coordinator: SyncCoordinator,
        limiter: UsageLimiter,
        *,
        personal_require_rejection_reason: bool = True,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.limiter = limiter
        self.personal_require_rejection_reason = personal_require_rejection_reason

    def _load(self, scope: ResolvedScope, track_id: str) -> Track:
        row = self.store.get_track(scope=scope.filter, track_id=track_id)
        if row is None:
            raise track_not_found(track_id)
        return Track.from_row(row)

    def plan_advance(self, scope: ResolvedScope, track: Track) -> tuple[Phase, dict[str, Any], dict[str, Any]]:
        """Validate the next hop; returns the target phase, the fields written with it and the row guard."""
        if track.archived:
            raise GateError(GateError.TRACK_ARCHIVED, "archived tracks cannot move")
        target = track.phase.next()
        if target is None:
            raise GateError(GateError.ALREADY_FINAL, "track is already in the vault")
        permission = HOP_PERMISSIONS[track.phase]
        if not getattr(scope.permissions, permission):
            raise Forbidden(
                f"moving from {track.phase.value} to {target.value} is not permitted",
                permission=permission,
            )

        updates: dict[str, Any] = {"phase": target.value}
        expected: dict[str, Any] = {"phase": track.phase.value, "archived": False}
        if track.phase == Phase.SECOND_LISTEN:
            if not track.energy:
                raise GateError(
                    GateError.ENERGY_REQUIRED,
                    "Please set an energy level before advancing this track.",
                )
            updates["moved_to_second_listen_at"] = None
            expected["energy"] = track.energy
        if target == Phase.SECOND_LISTEN:
            updates["moved_to_second_listen_at"] = self.store.now().isoformat()
        if target == Phase.UPCOMING:
            if not track.contract_signed:
                raise GateError(
                    GateError.CONTRACT_NOT_SIGNED,
                    "The contract must be signed before scheduling a release.",
                )
            expected["contract_signed"] = True
            target_date = track.target_release_date
            updates["release_date"] = None if target_date is None else target_date.isoformat()
        if target == Phase.VAULT:
            self.limiter.ensure_within_limit(track.organization_id, "vault_tracks")
        return target, updates, expected

    def advance(self, scope: ResolvedScope, track_id: str) -> Track | None:
        track = self._load(scope, track_id)
        target, updates, expected = self.plan_advance(scope, track)

        def _write() -> None:
            apply_track_update(self.store, scope.filter, track_id, updates, expected)

        result = self._mutate(track_id, _write, optimistic={"phase": target})
        logger.info("track advanced track_id=%s from=%s to=%s", track_id, track.phase.value, target.value)
        return result

    def _mutate(self, track_id: str, write: Callable[[], None], optimistic: dict[str, Any]) -> Track | None:
        try:
            return self.coordinator.mutate(track_id, write, optimistic=optimistic)
        except GateError as exc:
            if exc.code in {GateError.TRACK_CHANGED, GateError.TRACK_ARCHIVED}:
                self.coordinator.reconcile(track_id)
            raise

    def _requires_reason(self, track: Track) -> bool:
        if track.organization_id is None:
            return self.personal_require_rejection_reason
        org = self.store.get_organization(track.organization_id) or {}
        return bool(org.get("require_rejection_reason", True))

    def reject(self, scope: ResolvedScope, track_id: str, reason: str | None = None) -> Track | None:
        if not scope.permissions.can_access_archive:
            raise Forbidden("rejecting tracks is not permitted", permission="can_access_archive")
        track = self._load(scope, track_id)
        if track.archived:
            raise GateError(GateError.TRACK_ARCHIVED, "track is already archived")
        cleaned = (reason or "").strip()
        if not cleaned:
            if self._requires_reason(track):
                raise GateError(GateError.REASON_REQUIRED, "A rejection reason is required.")
            cleaned = NO_REASON_PLACEHOLDER
        updates = {"archived": True, "rejection_reason": cleaned}

        def _write() -> None:
            apply_track_update(self.store, scope.filter, track_id, updates, {"archived": False})

        return self._mutate(track_id, _write, optimistic={"archived": True, "rejection_reason": cleaned})


@dataclass
class SweepReport:
    moved: dict[str, list[str]] = field(default_factory=dict)
    skipped: dict[str, list[str]] = field(default_factory=dict)

    @property
    def moved_count(self) -> int:
        return sum(len(x) for x in self.moved.values())

    def as_dict(self) -> dict[str, Any]:
        return {
            "moved": {k: list(v) for k, v in self.moved.items()},
            "skipped": {k: list(v) for k, v in self.skipped.items()},
            "moved_count": self.moved_count,
        }


class ReleaseSweeper:
    """Moves due upcoming releases to the vault, one workspace at a time."""

    def __init__(
        self,
        store: Any,
        limiter: UsageLimiter,
        *,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self._today = today or (lambda: datetime.now(UTC).date())

    def administered_workspaces(self, staff_id: str) -> list[ScopeFilter]:
        filters = [ScopeFilter.personal(staff_id)]
        for row in self.store.list_memberships(staff_id=staff_id):
            if Role.parse(row["role"]) in {Role.OWNER, Role.MANAGER}:
                filters.append(ScopeFilter.organizations([row["organization_id"]]))
        return filters

    def sweep_workspace(
        self,
        scope_filter: ScopeFilter,
        *,
        today: date | None = None,
        report: SweepReport | None = None,
    ) -> SweepReport:
        report = report or SweepReport()
        if scope_filter.is_empty:
            return report
        cutoff = today or self._today()
        key = scope_filter.cache_key()
        rows = self.store.query_tracks(
            scope=scope_filter,
            phase=Phase.UPCOMING,
            archived=False,
            released_on_or_before=cutoff,
        )
        for row in rows:
            release = parse_date(row.get("release_date"))
            if release is None or release > cutoff:
                continue
            try:
                self.limiter.ensure_within_limit(row.get("organization_id"), "vault_tracks")
            except QuotaExceeded:
                logger.warning("release sweep skipped track_id=%s: vault quota reached", row["id"])
                report.skipped.setdefault(key, []).append(str(row["id"]))
                continue
            updated = self.store.update_track(
                scope=scope_filter,
                track_id=str(row["id"]),
                updates={"phase": Phase.VAULT.value},
                expected={"phase": Phase.UPCOMING.value, "archived": False},
            )
            if updated is not None:
                report.moved.setdefault(key, []).append(str(row["id"]))
        return report

    def sweep_for_staff(self, staff_id: str, *, today: date | None = None) -> SweepReport:
        report = SweepReport()
        for scope_filter in self.administered_workspaces(staff_id):
            self.sweep_workspace(scope_filter, today=today, report=report)
        if report.moved_count:
            logger.info("release sweep staff_id=%s moved=%s", staff_id, report.moved_count)
        return report

    def sweep_all_workspaces(self, *, today: date | None = None) -> SweepReport:
        cutoff = today or self._today()
        due = self.store.query_tracks(
            scope=ScopeFilter.global_(),
            phase=Phase.UPCOMING,
            archived=False,
            released_on_or_before=cutoff,
        )
        workspaces: dict[str, ScopeFilter] = {}
        for row in due:
            scope_filter = ScopeFilter.for_row(row)
            workspaces.setdefault(scope_filter.cache_key(), scope_filter)
        report = SweepReport()
        for scope_filter in workspaces.values():
            self.sweep_workspace(scope_filter, today=cutoff, report=report)
        logger.info("release sweep workspaces=%s moved=%s", len(workspaces), report.moved_count)
        return report
