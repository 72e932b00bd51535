from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from soundpath.domain import Track
from soundpath.errors import TransientStoreError
from soundpath.notifications import Observable
from soundpath.scope import ResolvedScope

logger = logging.getLogger(__name__)

T = TypeVar("T")

# fields owned by the store; never patched locally
DERIVED_FIELDS = frozenset({"vote_total", "votes_by_voter", "id", "created_at", "organization_id", "recipient_user_id"})


class SyncCoordinator:
    """Keeps the local scoped track set consistent with the store."""

    WATCHED_TABLES: tuple[str, ...] = ("tracks", "votes")

    def __init__(
        self,
        store: Any,
        *,
        focus_cooldown_s: float = 15.0,
        read_retries: int = 1,
        clock: Callable[[], float] | None = None,
        defer_change_reload: bool = False,
    ) -> None:
        self.store = store
        self.defer_change_reload = defer_change_reload
        self.focus_cooldown_s = max(0.0, float(focus_cooldown_s))
        self.read_retries = max(0, int(read_retries))
        self._clock = clock or time.monotonic
        self.tracks: Observable[list[Track]] = Observable([])
        self.loading: Observable[bool] = Observable(False)
        self._scope = ResolvedScope.empty()
        self._unsubscribers: list[Callable[[], None]] = []
        self._last_reload_at: float | None = None
        self._lock = threading.RLock()
        self._dirty = False

    @property
    def scope(self) -> ResolvedScope:
        return self._scope

    @property
    def is_stale(self) -> bool:
        return self._dirty

    @property
    def subscription_count(self) -> int:
        return len(self._unsubscribers)

    def attach(self, scope: ResolvedScope) -> list[Track]:
        with self._lock:
            self._teardown()
            self._scope = scope
            if not scope.is_empty:
                for table in self.WATCHED_TABLES:
                    self._unsubscribers.append(self.store.subscribe_to_changes(table, self._on_change))
            return self.reload()

    def _teardown(self) -> None:
        while self._unsubscribers:
            unsubscribe = self._unsubscribers.pop()
            unsubscribe()

    def close(self) -> None:
        with self._lock:
            self._teardown()
            self._scope = ResolvedScope.empty()
            self._dirty = False

    def _on_change(self, event: dict[str, Any]) -> None:
        """Runs on the writer's thread; marks the set stale and reloads only when nobody else holds it."""
        self._dirty = True
        if self.defer_change_reload:
            return
        if not self._lock.acquire(blocking=False):
            return
        try:
            self.reload()
        except TransientStoreError as exc:
            logger.warning("reload after %s change failed: %s", event.get("table"), exc.message)
        finally:
            self._lock.release()

    def refresh_if_stale(self) -> bool:
        """Apply a change notification that arrived while reloads were deferred."""
        if not self._dirty:
            return False
        self.reload()
        return True

    def _read(self, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except TransientStoreError:
                if attempt >= self.read_retries:
                    raise
                attempt += 1
                logger.info("retrying scoped read attempt=%s", attempt)

    def _fetch_tracks(self) -> list[Track]:
        scope_filter = self._scope.filter
        rows = self.store.query_tracks(scope=scope_filter, descending=True)
        track_ids = [str(row["id"]) for row in rows]
        votes_by_track: dict[str, list[dict[str, Any]]] = {}
        for vote in self.store.list_votes(scope=scope_filter, track_ids=track_ids):
            votes_by_track.setdefault(str(vote["track_id"]), []).append(vote)
        return [Track.from_row(row, votes_by_track.get(str(row["id"]), [])) for row in rows]

    def reload(self) -> list[Track]:
        with self._lock:
            self._dirty = False
            if self._scope.is_empty:
                self.tracks.set([])
                return []
            self.loading.set(True)
            try:
                tracks = self._read(self._fetch_tracks)
            except TransientStoreError:
                self._dirty = True
                raise
            finally:
                self.loading.set(False)
            self._last_reload_at = self._clock()
            self.tracks.set(tracks)
            return tracks

    def view_activated(self) -> bool:
        now = self._clock()
        if self._last_reload_at is not None and now - self._last_reload_at < self.focus_cooldown_s:
            return self.refresh_if_stale()
        self.reload()
        return True

    def find(self, track_id: str) -> Track | None:
        for track in self.tracks.value:
            if track.id == track_id:
                return track
        return None

    def _fetch_track(self, track_id: str) -> Track | None:
        row = self.store.get_track(scope=self._scope.filter, track_id=track_id)
        if row is None:
            return None
        votes = self.store.list_votes(scope=self._scope.filter, track_ids=[track_id])
        return Track.from_row(row, votes)

    def reconcile(self, track_id: str) -> Track | None:
        """Replace the cached entry with the store's copy of the track and its votes."""
        with self._lock:
            fresh = self._read(lambda: self._fetch_track(track_id))
            current = [t for t in self.tracks.value if t.id != track_id]
            if fresh is not None:
                current.append(fresh)
                current.sort(key=lambda t: t.created_at, reverse=True)
            self.tracks.set(current)
            return fresh

    def mutate(
        self,
        track_id: str,
        write: Callable[[], Any],
        optimistic: dict[str, Any] | None = None,
    ) -> Track | None:
        if optimistic:
            derived = DERIVED_FIELDS.intersection(optimistic)
            if derived:
                raise ValueError(f"derived fields cannot be patched locally: {sorted(derived)}")
        with self._lock:
            previous = list(self.tracks.value)
            if optimistic:
                self.tracks.set([t.with_updates(**optimistic) if t.id == track_id else t for t in previous])
            try:
                write()
            except Exception:
                self.tracks.set(previous)
                raise
            return self.reconcile(track_id)
