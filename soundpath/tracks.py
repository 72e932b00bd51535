from __future__ import annotations

import logging
from collections import Counter
from datetime import date
from typing import Any

from soundpath.domain import Phase, ScopeFilter, Track
from soundpath.errors import Forbidden, GateError, track_not_found, validation_failed
from soundpath.pipeline import apply_track_update
from soundpath.scope import ResolvedScope
from soundpath.sync import SyncCoordinator
from soundpath.usage import UsageLimiter

logger = logging.getLogger(__name__)

DEFAULT_GENRE = "Tech House"
DEFAULT_BPM = 128
MAX_ENERGY = 5
UPCOMING_LIMIT = 3


def _workspace_owner(scope: ResolvedScope, staff_id: str) -> tuple[str | None, str | None]:
    if scope.is_personal:
        return None, staff_id
    if scope.organization_id is not None:
        return scope.organization_id, None
    raise Forbidden("tracks can only be added inside a personal or organization workspace")


class TrackService:
    """Intake, field edits and listen logging for tracks in the active workspace."""

    def __init__(self, store: Any, coordinator: SyncCoordinator, limiter: UsageLimiter) -> None:
        self.store = store
        self.coordinator = coordinator
        self.limiter = limiter

    def add_track(
        self,
        scope: ResolvedScope,
        staff_id: str,
        *,
        title: str,
        artist_name: str,
        genre: str | None = None,
        bpm: int | None = None,
        link: str = "",
    ) -> Track:
        if not title.strip() or not artist_name.strip():
            raise validation_failed("title and artist_name are required")
        organization_id, recipient_user_id = _workspace_owner(scope, staff_id)
        workspace_filter = (
            ScopeFilter.organizations([organization_id])
            if organization_id is not None
            else ScopeFilter.personal(staff_id)
        )

        self.limiter.ensure_within_limit(organization_id, "tracks")
        artist = self.store.find_artist(scope=workspace_filter, name=artist_name)
        if artist is None:
            self.limiter.ensure_within_limit(organization_id, "contacts")
            artist = self.store.insert_artist(
                name=artist_name,
                organization_id=organization_id,
                recipient_user_id=recipient_user_id,
            )

        row = self.store.insert_track(
            track={
                "title": title.strip(),
                "artist_name": artist["name"],
                "artist_id": artist["id"],
                "genre": (genre or DEFAULT_GENRE).strip(),
                "bpm": DEFAULT_BPM if bpm is None else int(bpm),
                "energy": 0,
                "phase": Phase.INBOX.value,
                "link": link.strip(),
                "organization_id": organization_id,
                "recipient_user_id": recipient_user_id,
            }
        )
        logger.info("track added track_id=%s organization_id=%s", row["id"], organization_id)
        self.coordinator.reload()
        return Track.from_row(row)

    def _editable(self, scope: ResolvedScope, track_id: str) -> dict[str, Any]:
        row = self.store.get_track(scope=scope.filter, track_id=track_id)
        if row is None:
            raise track_not_found(track_id)
        if row.get("archived"):
            raise GateError(GateError.TRACK_ARCHIVED, "archived tracks cannot be edited")
        return row

    def _write(
        self,
        scope: ResolvedScope,
        track_id: str,
        updates: dict[str, Any],
        optimistic: dict[str, Any] | None = None,
    ) -> Track | None:
        def _op() -> None:
            apply_track_update(self.store, scope.filter, track_id, updates, {"archived": False})

        try:
            return self.coordinator.mutate(track_id, _op, optimistic=optimistic)
        except GateError:
            self.coordinator.reconcile(track_id)
            raise

    def set_energy(self, scope: ResolvedScope, track_id: str, energy: int) -> Track | None:
        if not scope.permissions.can_set_energy:
            raise Forbidden("setting energy is not permitted", permission="can_set_energy")
        value = int(energy)
        if value < 0 or value > MAX_ENERGY:
            raise validation_failed(f"energy must be between 0 and {MAX_ENERGY}")
        self._editable(scope, track_id)
        return self._write(scope, track_id, {"energy": value}, optimistic={"energy": value})

    def set_contract_signed(self, scope: ResolvedScope, track_id: str, signed: bool) -> Track | None:
        if not scope.permissions.can_advance_contract:
            raise Forbidden("contract changes are not permitted", permission="can_advance_contract")
        self._editable(scope, track_id)
        updates = {"contract_signed": bool(signed)}
        return self._write(scope, track_id, updates, optimistic=updates)

    def set_target_release_date(self, scope: ResolvedScope, track_id: str, target: date | None) -> Track | None:
        if not scope.permissions.can_edit_release_date:
            raise Forbidden("editing release dates is not permitted", permission="can_edit_release_date")
        self._editable(scope, track_id)
        raw = None if target is None else target.isoformat()
        return self._write(scope, track_id, {"target_release_date": raw}, optimistic={"target_release_date": target})

    def toggle_watched(self, scope: ResolvedScope, track_id: str) -> Track | None:
        row = self._editable(scope, track_id)
        watched = not bool(row.get("watched"))
        return self._write(scope, track_id, {"watched": watched}, optimistic={"watched": watched})

    def log_listen(self, scope: ResolvedScope, staff_id: str, track_id: str) -> dict[str, Any]:
        row = self.store.get_track(scope=scope.filter, track_id=track_id)
        if row is None:
            raise track_not_found(track_id)
        return self.store.append_listen_event(
            staff_id=staff_id,
            track_id=track_id,
            organization_id=row.get("organization_id"),
        )


def quick_stats(tracks: list[Track]) -> dict[str, int]:
    stats = {phase.value: 0 for phase in Phase}
    for track in tracks:
        if not track.archived:
            stats[track.phase.value] += 1
    stats["total"] = sum(stats.values())
    return stats


def upcoming_releases(tracks: list[Track], *, limit: int = UPCOMING_LIMIT) -> list[Track]:
    candidates = [
        t
        for t in tracks
        if t.phase in {Phase.UPCOMING, Phase.CONTRACTING} and t.target_release_date is not None and not t.archived
    ]
    candidates.sort(key=lambda t: t.target_release_date)
    return candidates[:limit]


def watched_tracks(tracks: list[Track]) -> list[Track]:
    return [t for t in tracks if t.watched and not t.archived]


def artist_directory(tracks: list[Track]) -> list[dict[str, Any]]:
    grouped: dict[str, list[Track]] = {}
    for track in tracks:
        grouped.setdefault(track.artist_name, []).append(track)
    directory = []
    for name, items in grouped.items():
        signed = [t for t in items if t.phase in {Phase.UPCOMING, Phase.VAULT}]
        genres = Counter(t.genre for t in items if t.genre)
        directory.append(
            {
                "name": name,
                "total_submissions": len(items),
                "total_signed": len(signed),
                "conversion_rate": round(len(signed) / len(items) * 100, 1),
                "primary_genre": genres.most_common(1)[0][0] if genres else "",
                "total_earnings": round(sum(t.total_earnings for t in items), 2),
            }
        )
    directory.sort(key=lambda x: (-x["total_submissions"], x["name"]))
    return directory
