from __future__ import annotations

import logging
from typing import Any

from soundpath.domain import ScopeFilter, Track, VoteValue
from soundpath.errors import Forbidden, GateError, track_not_found, validation_failed
from soundpath.scope import ResolvedScope
from soundpath.sync import SyncCoordinator

logger = logging.getLogger(__name__)


class VoteLedger:
    """One signed vote per (track, voter); the total is always read back from the store."""

    def __init__(self, store: Any, coordinator: SyncCoordinator) -> None:
        self.store = store
        self.coordinator = coordinator

    def cast_vote(self, scope: ResolvedScope, track_id: str, voter_id: str, value: int) -> Track | None:
        try:
            vote = VoteValue(int(value))
        except ValueError:
            raise validation_failed("vote value must be -1, 0 or 1") from None
        if not scope.permissions.can_vote:
            raise Forbidden("voting is not permitted in this workspace", permission="can_vote")

        row = self.store.get_track(scope=scope.filter, track_id=track_id)
        if row is None:
            raise track_not_found(track_id)
        if row.get("archived"):
            raise GateError(GateError.TRACK_ARCHIVED, "archived tracks cannot be voted on")

        track_scope = ScopeFilter.for_row(row)
        organization_id = row.get("organization_id")
        existing = self.store.get_vote(scope=track_scope, track_id=track_id, staff_id=voter_id)
        current = 0 if existing is None else int(existing["value"])
        if int(vote) == current:
            logger.debug("vote unchanged track_id=%s staff_id=%s value=%s", track_id, voter_id, current)
            return self.coordinator.reconcile(track_id)

        def _write() -> None:
            if current != 0:
                self.store.delete_vote(
                    scope=track_scope,
                    track_id=track_id,
                    staff_id=voter_id,
                    organization_id=organization_id,
                )
            if vote != VoteValue.RETRACT:
                self.store.insert_vote(
                    scope=track_scope,
                    track_id=track_id,
                    staff_id=voter_id,
                    value=int(vote),
                    organization_id=organization_id,
                )

        return self.coordinator.mutate(track_id, _write)
