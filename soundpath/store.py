from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from soundpath.db.postgres import PostgresTxRunner, _import_psycopg
from soundpath.db.rls import PostgresRlsManager
from soundpath.domain import Permissions, Phase, Role, ScopeFilter
from soundpath.errors import ApiError, validation_failed
from soundpath.notifications import ChangeFeed, ChangeHandler
from soundpath.repositories import (
    InMemoryListenLogsRepository,
    InMemoryTracksRepository,
    InMemoryVotesRepository,
    PostgresListenLogsRepository,
    PostgresTracksRepository,
    PostgresVotesRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


def _org_not_found(organization_id: str) -> ApiError:
    return ApiError(
        code="ORGANIZATION_NOT_FOUND",
        message=f"organization not found: {organization_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


class InMemoryStore:
    """Authoritative reference store: workspace-scoped tables plus the server-side rules the core relies on."""

    USAGE_RESOURCES: tuple[str, ...] = ("tracks", "contacts", "staff", "vault_tracks")
    CHANGE_TABLES: tuple[str, ...] = ("tracks", "votes", "listen_logs", "memberships")

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        self.change_feed = ChangeFeed()
        self.revision = 0
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self.organizations: dict[str, dict[str, Any]] = {}
        self.staff: dict[str, dict[str, Any]] = {}
        self.memberships: dict[str, dict[str, Any]] = {}
        self.invites: dict[str, dict[str, Any]] = {}
        self.artists: dict[str, dict[str, Any]] = {}
        self.tracks: dict[str, dict[str, Any]] = {}
        self.votes: dict[str, dict[str, Any]] = {}
        self.listen_logs: list[dict[str, Any]] = []
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.tracks_repository = InMemoryTracksRepository(self.tracks)
        self.votes_repository = InMemoryVotesRepository(self.votes, self.tracks)
        self.listen_logs_repository = InMemoryListenLogsRepository(self.listen_logs)

    def reset(self) -> None:
        with self._lock:
            self.idempotency_records.clear()
            self.organizations.clear()
            self.staff.clear()
            self.memberships.clear()
            self.invites.clear()
            self.artists.clear()
            self.tracks.clear()
            self.votes.clear()
            self.listen_logs.clear()
            self.revision += 1
        self.change_feed.clear()

    def set_clock(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _utcnow_iso(self) -> str:
        return self.now().isoformat()

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)

    @staticmethod
    def _membership_key(staff_id: str, organization_id: str) -> str:
        return f"{organization_id}:{staff_id}"

    def _persist_state(self) -> None:
        """Hook for snapshotting backends; called after every committed write."""

    def _touch(self) -> None:
        with self._lock:
            self.revision += 1

    def _publish(self, table: str, *, change_type: str, record_id: str) -> None:
        self._touch()
        self.change_feed.publish(table, change_type=change_type, record_id=record_id)

    def subscribe_to_changes(self, table: str, on_change: ChangeHandler) -> Callable[[], None]:
        if table not in self.CHANGE_TABLES:
            raise ValueError(f"unsupported change table: {table}")
        return self.change_feed.subscribe(table, on_change)

    def run_idempotent(
        self,
        *,
        endpoint: str,
        scope_key: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (f"{scope_key}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        if key in self.idempotency_records:
            record = self.idempotency_records[key]
            if record.fingerprint != current_fingerprint:
                raise ApiError(
                    code="IDEMPOTENCY_CONFLICT",
                    message="same key with different payload",
                    error_class="validation",
                    retryable=False,
                    http_status=409,
                )
            return record.data

        data = execute()
        with self._lock:
            self.idempotency_records[key] = IdempotencyRecord(fingerprint=current_fingerprint, data=data)
            self._persist_state()
        return data

    # organizations and staff

    def create_organization(
        self,
        *,
        name: str,
        parent_id: str | None = None,
        require_rejection_reason: bool = True,
        plan_limits: dict[str, int] | None = None,
        fatigue_policy: dict[str, int] | None = None,
        organization_id: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            if parent_id is not None and parent_id not in self.organizations:
                raise _org_not_found(parent_id)
            org = {
                "id": organization_id or self._new_id("org"),
                "name": name,
                "parent_id": parent_id,
                "require_rejection_reason": bool(require_rejection_reason),
                "plan_limits": dict(plan_limits or {}),
                "fatigue_policy": dict(fatigue_policy or {}),
                "created_at": self._utcnow_iso(),
            }
            self.organizations[org["id"]] = org
            self._persist_state()
        return dict(org)

    def get_organization(self, organization_id: str) -> dict[str, Any] | None:
        org = self.organizations.get(organization_id)
        return None if org is None else dict(org)

    def list_organizations(self) -> list[dict[str, Any]]:
        return [dict(x) for x in self.organizations.values()]

    def update_organization(self, organization_id: str, **updates: Any) -> dict[str, Any]:
        allowed = {"name", "require_rejection_reason", "plan_limits", "fatigue_policy"}
        unknown = set(updates) - allowed
        if unknown:
            raise validation_failed(f"organization fields are not updatable: {sorted(unknown)}")
        with self._lock:
            org = self.organizations.get(organization_id)
            if org is None:
                raise _org_not_found(organization_id)
            org.update(updates)
            self._persist_state()
            self._touch()
        return dict(org)

    def expand_org_hierarchy(self, organization_id: str) -> list[str]:
        if organization_id not in self.organizations:
            return []
        expanded = [organization_id]
        frontier = [organization_id]
        while frontier:
            parent = frontier.pop(0)
            for org in self.organizations.values():
                if org.get("parent_id") == parent and org["id"] not in expanded:
                    expanded.append(org["id"])
                    frontier.append(org["id"])
        return expanded

    def create_staff(
        self,
        *,
        name: str,
        email: str = "",
        is_system_admin: bool = False,
        staff_id: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            row = {
                "id": staff_id or self._new_id("staff"),
                "name": name,
                "email": email.strip().lower(),
                "is_system_admin": bool(is_system_admin),
                "created_at": self._utcnow_iso(),
            }
            self.staff[row["id"]] = row
            self._persist_state()
        return dict(row)

    def get_staff(self, staff_id: str) -> dict[str, Any] | None:
        row = self.staff.get(staff_id)
        return None if row is None else dict(row)

    def upsert_membership(
        self,
        *,
        staff_id: str,
        organization_id: str,
        role: Role | str,
        permissions: dict[str, bool] | None = None,
        active: bool = True,
    ) -> dict[str, Any]:
        parsed_role = Role.parse(role)
        with self._lock:
            if organization_id not in self.organizations:
                raise _org_not_found(organization_id)
            row = {
                "staff_id": staff_id,
                "organization_id": organization_id,
                "role": parsed_role.value,
                "permissions": dict(
                    permissions if permissions is not None else Permissions.defaults_for_role(parsed_role).as_dict()
                ),
                "active": bool(active),
                "updated_at": self._utcnow_iso(),
            }
            self.memberships[self._membership_key(staff_id, organization_id)] = row
            self._persist_state()
        self._publish("memberships", change_type="upsert", record_id=f"{organization_id}:{staff_id}")
        return dict(row)

    def update_membership(self, *, staff_id: str, organization_id: str, **updates: Any) -> dict[str, Any] | None:
        allowed = {"permissions", "active", "role"}
        unknown = set(updates) - allowed
        if unknown:
            raise validation_failed(f"membership fields are not updatable: {sorted(unknown)}")
        with self._lock:
            row = self.memberships.get(self._membership_key(staff_id, organization_id))
            if row is None:
                return None
            row.update(updates)
            row["updated_at"] = self._utcnow_iso()
            self._persist_state()
        self._publish("memberships", change_type="update", record_id=f"{organization_id}:{staff_id}")
        return dict(row)

    def get_active_membership(self, *, staff_id: str, organization_id: str) -> dict[str, Any] | None:
        row = self.memberships.get(self._membership_key(staff_id, organization_id))
        if row is None or not row.get("active", False):
            return None
        return dict(row)

    def list_memberships(
        self,
        *,
        organization_id: str | None = None,
        staff_id: str | None = None,
        active_only: bool = True,
    ) -> list[dict[str, Any]]:
        rows = []
        for row in self.memberships.values():
            if organization_id is not None and row["organization_id"] != organization_id:
                continue
            if staff_id is not None and row["staff_id"] != staff_id:
                continue
            if active_only and not row.get("active", False):
                continue
            rows.append(dict(row))
        return rows

    def upsert_invite(
        self,
        *,
        organization_id: str,
        email: str,
        role: Role | str,
        permissions: dict[str, bool],
        invited_by: str,
    ) -> dict[str, Any]:
        normalized = email.strip().lower()
        with self._lock:
            key = f"{organization_id}:{normalized}"
            existing = self.invites.get(key)
            row = {
                "id": existing["id"] if existing else self._new_id("inv"),
                "organization_id": organization_id,
                "email": normalized,
                "role": Role.parse(role).value,
                "permissions": dict(permissions),
                "invited_by": invited_by,
                "status": "pending",
                "created_at": existing["created_at"] if existing else self._utcnow_iso(),
            }
            self.invites[key] = row
            self._persist_state()
            self._touch()
        return dict(row)

    def list_invites(self, *, organization_id: str, pending_only: bool = True) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in self.invites.values()
            if row["organization_id"] == organization_id and (not pending_only or row["status"] == "pending")
        ]

    # artists

    def find_artist(self, *, scope: ScopeFilter, name: str) -> dict[str, Any] | None:
        normalized = name.strip().lower()
        for row in self.artists.values():
            if scope.matches(row) and str(row.get("name", "")).strip().lower() == normalized:
                return dict(row)
        return None

    def insert_artist(
        self,
        *,
        name: str,
        organization_id: str | None,
        recipient_user_id: str | None,
    ) -> dict[str, Any]:
        with self._lock:
            row = {
                "id": self._new_id("art"),
                "name": name.strip(),
                "organization_id": organization_id,
                "recipient_user_id": recipient_user_id if organization_id is None else None,
                "created_at": self._utcnow_iso(),
            }
            self.artists[row["id"]] = row
            self._persist_state()
            self._touch()
        return dict(row)

    def list_artists(self, *, scope: ScopeFilter) -> list[dict[str, Any]]:
        return [dict(row) for row in self.artists.values() if scope.matches(row)]

    # tracks

    def query_tracks(
        self,
        *,
        scope: ScopeFilter,
        phase: Phase | str | None = None,
        archived: bool | None = None,
        released_on_or_before: date | None = None,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        if scope.is_empty:
            return []
        return self.tracks_repository.query(
            scope=scope,
            phase=None if phase is None else Phase.parse(phase).value,
            archived=archived,
            released_on_or_before=released_on_or_before,
            descending=descending,
        )

    def get_track(self, *, scope: ScopeFilter, track_id: str) -> dict[str, Any] | None:
        if scope.is_empty:
            return None
        return self.tracks_repository.get(scope=scope, track_id=track_id)

    def insert_track(self, *, track: dict[str, Any]) -> dict[str, Any]:
        organization_id = track.get("organization_id")
        recipient_user_id = track.get("recipient_user_id")
        if (organization_id is None) == (recipient_user_id is None):
            raise validation_failed("track must belong to exactly one workspace")
        row = {
            "id": track.get("id") or self._new_id("trk"),
            "title": str(track.get("title") or ""),
            "artist_name": str(track.get("artist_name") or ""),
            "artist_id": track.get("artist_id"),
            "genre": str(track.get("genre") or ""),
            "bpm": int(track.get("bpm") or 0),
            "energy": int(track.get("energy") or 0),
            "phase": Phase.parse(track.get("phase") or Phase.INBOX).value,
            "archived": bool(track.get("archived", False)),
            "rejection_reason": track.get("rejection_reason"),
            "vote_total": 0,
            "created_at": track.get("created_at") or self._utcnow_iso(),
            "moved_to_second_listen_at": track.get("moved_to_second_listen_at"),
            "target_release_date": track.get("target_release_date"),
            "release_date": track.get("release_date"),
            "organization_id": organization_id,
            "recipient_user_id": None if organization_id is not None else recipient_user_id,
            "contract_signed": bool(track.get("contract_signed", False)),
            "watched": bool(track.get("watched", False)),
            "total_earnings": float(track.get("total_earnings") or 0.0),
            "spotify_plays": int(track.get("spotify_plays") or 0),
            "link": str(track.get("link") or ""),
        }
        with self._lock:
            created = self.tracks_repository.insert(track=row)
            self._persist_state()
        self._publish("tracks", change_type="insert", record_id=created["id"])
        return created

    def update_track(
        self,
        *,
        scope: ScopeFilter,
        track_id: str,
        updates: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``updates`` only while every ``expected`` column still holds its value; None otherwise."""
        if scope.is_empty:
            return None
        with self._lock:
            updated = self.tracks_repository.update(
                scope=scope,
                track_id=track_id,
                updates=updates,
                expected=expected,
            )
            if updated is not None:
                self._persist_state()
        if updated is not None:
            self._publish("tracks", change_type="update", record_id=track_id)
        return updated

    def count_tracks_created(self, *, scope: ScopeFilter, since: datetime) -> int:
        if scope.is_empty:
            return 0
        return self.tracks_repository.count_created(scope=scope, since=since)

    # votes

    def get_vote(self, *, scope: ScopeFilter, track_id: str, staff_id: str) -> dict[str, Any] | None:
        return self.votes_repository.get(scope=scope, track_id=track_id, staff_id=staff_id)

    def list_votes(self, *, scope: ScopeFilter, track_ids: list[str]) -> list[dict[str, Any]]:
        if scope.is_empty or not track_ids:
            return []
        return self.votes_repository.list_for_tracks(scope=scope, track_ids=track_ids)

    def insert_vote(
        self,
        *,
        scope: ScopeFilter,
        track_id: str,
        staff_id: str,
        value: int,
        organization_id: str | None,
    ) -> dict[str, Any]:
        if int(value) not in {-1, 1}:
            raise validation_failed("vote value must be -1 or 1")
        vote = {
            "track_id": track_id,
            "staff_id": staff_id,
            "value": int(value),
            "organization_id": organization_id,
            "created_at": self._utcnow_iso(),
        }
        with self._lock:
            created = self.votes_repository.insert(scope=scope, vote=vote)
            if created is None:
                raise ApiError(
                    code="VOTE_CONFLICT",
                    message="voter already has a vote on this track",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            self._persist_state()
        self._publish("votes", change_type="insert", record_id=f"{track_id}:{staff_id}")
        self._publish("tracks", change_type="update", record_id=track_id)
        return created

    def delete_vote(
        self,
        *,
        scope: ScopeFilter,
        track_id: str,
        staff_id: str,
        organization_id: str | None,
    ) -> int:
        with self._lock:
            removed = self.votes_repository.delete(
                scope=scope,
                track_id=track_id,
                staff_id=staff_id,
                organization_id=organization_id,
            )
            if removed:
                self._persist_state()
        if removed:
            self._publish("votes", change_type="delete", record_id=f"{track_id}:{staff_id}")
            self._publish("tracks", change_type="update", record_id=track_id)
        return removed

    def recomputed_vote_total(self, *, scope: ScopeFilter, track_id: str) -> int:
        row = self.get_track(scope=scope, track_id=track_id)
        return 0 if row is None else int(row.get("vote_total") or 0)

    # listen logs

    def append_listen_event(
        self,
        *,
        staff_id: str,
        track_id: str,
        organization_id: str | None,
        listened_at: str | None = None,
    ) -> dict[str, Any]:
        event = {
            "id": self._new_id("lsn"),
            "staff_id": staff_id,
            "track_id": track_id,
            "organization_id": organization_id,
            "listened_at": listened_at or self._utcnow_iso(),
        }
        with self._lock:
            created = self.listen_logs_repository.append(event=event)
            self._persist_state()
        self._publish("listen_logs", change_type="insert", record_id=event["id"])
        return created

    def count_listen_events(self, *, staff_id: str, organization_id: str | None, since: datetime) -> int:
        return self.listen_logs_repository.count(staff_id=staff_id, organization_id=organization_id, since=since)

    def listen_counts_by_staff(self, *, organization_id: str, since: datetime) -> dict[str, int]:
        return self.listen_logs_repository.counts_by_staff(organization_id=organization_id, since=since)

    # usage

    def _usage_current(self, organization_id: str, resource: str) -> int:
        scope = ScopeFilter.organizations([organization_id])
        if resource == "tracks":
            return len(self.query_tracks(scope=scope))
        if resource == "vault_tracks":
            return len(self.query_tracks(scope=scope, phase=Phase.VAULT))
        if resource == "contacts":
            return len(self.list_artists(scope=scope))
        if resource == "staff":
            members = len(self.list_memberships(organization_id=organization_id))
            return members + len(self.list_invites(organization_id=organization_id))
        raise validation_failed(f"unknown usage resource: {resource}")

    def get_usage(self, *, organization_id: str) -> dict[str, dict[str, int]]:
        org = self.organizations.get(organization_id)
        if org is None:
            raise _org_not_found(organization_id)
        limits = org.get("plan_limits") or {}
        usage = {}
        for resource in self.USAGE_RESOURCES:
            raw_limit = limits.get(f"max_{resource}")
            usage[resource] = {
                "limit": -1 if raw_limit is None else int(raw_limit),
                "current": self._usage_current(organization_id, resource),
            }
        return usage

    def check_usage_limit(self, *, organization_id: str, resource: str) -> bool:
        if resource not in self.USAGE_RESOURCES:
            raise validation_failed(f"unknown usage resource: {resource}")
        entry = self.get_usage(organization_id=organization_id)[resource]
        if entry["limit"] == -1:
            return True
        return entry["current"] < entry["limit"]

    def _state_snapshot(self) -> dict[str, Any]:
        idempotency_records = []
        for (scope, key), record in self.idempotency_records.items():
            idempotency_records.append(
                {
                    "scope": scope,
                    "key": key,
                    "fingerprint": record.fingerprint,
                    "data": record.data,
                }
            )
        return {
            "schema_version": 1,
            "idempotency_records": idempotency_records,
            "organizations": self.organizations,
            "staff": self.staff,
            "memberships": self.memberships,
            "invites": self.invites,
            "artists": self.artists,
            "tracks": self.tracks,
            "votes": self.votes,
            "listen_logs": self.listen_logs,
        }

    def _restore_state(self, payload: dict[str, Any]) -> None:
        self.idempotency_records = {}
        for item in payload.get("idempotency_records", []):
            if not isinstance(item, dict):
                continue
            self.idempotency_records[(str(item.get("scope", "")), str(item.get("key", "")))] = IdempotencyRecord(
                fingerprint=str(item.get("fingerprint", "")),
                data=item.get("data") if isinstance(item.get("data"), dict) else {},
            )
        for name in ("organizations", "staff", "memberships", "invites", "artists", "tracks", "votes"):
            table = payload.get(name)
            getattr(self, name).clear()
            if isinstance(table, dict):
                getattr(self, name).update(table)
        listen_logs = payload.get("listen_logs")
        self.listen_logs.clear()
        if isinstance(listen_logs, list):
            self.listen_logs.extend(x for x in listen_logs if isinstance(x, dict))
        self._bind_repositories()


class SqliteBackedStore(InMemoryStore):
    """Persistent store backend that snapshots state to SQLite."""

    def __init__(self, db_path: str, *, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(clock=clock)
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()
        self._load_state()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _persist_state(self) -> None:
        blob = json.dumps(self._state_snapshot(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO store_state(id, payload)
                    VALUES (1, ?)
                    ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
                    """,
                    (blob,),
                )
                conn.commit()

    def _load_state(self) -> None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT payload FROM store_state WHERE id = 1").fetchone()
        if row is None or not isinstance(row[0], str):
            return
        try:
            payload = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable sqlite snapshot path=%s", self._db_path)
            return
        if isinstance(payload, dict):
            self._restore_state(payload)

    def reset(self) -> None:
        super().reset()
        self._persist_state()


TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS tracks (
      id TEXT PRIMARY KEY,
      title TEXT NOT NULL,
      artist_name TEXT NOT NULL,
      artist_id TEXT,
      genre TEXT NOT NULL DEFAULT '',
      bpm INTEGER NOT NULL DEFAULT 0,
      energy INTEGER NOT NULL DEFAULT 0 CHECK (energy BETWEEN 0 AND 5),
      phase TEXT NOT NULL,
      archived BOOLEAN NOT NULL DEFAULT FALSE,
      rejection_reason TEXT,
      vote_total INTEGER NOT NULL DEFAULT 0,
      created_at TIMESTAMPTZ NOT NULL,
      moved_to_second_listen_at TIMESTAMPTZ,
      target_release_date DATE,
      release_date DATE,
      organization_id TEXT,
      recipient_user_id TEXT,
      contract_signed BOOLEAN NOT NULL DEFAULT FALSE,
      watched BOOLEAN NOT NULL DEFAULT FALSE,
      total_earnings DOUBLE PRECISION NOT NULL DEFAULT 0,
      spotify_plays BIGINT NOT NULL DEFAULT 0,
      link TEXT NOT NULL DEFAULT '',
      CHECK ((organization_id IS NULL) <> (recipient_user_id IS NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS votes (
      track_id TEXT NOT NULL REFERENCES tracks(id),
      staff_id TEXT NOT NULL,
      value SMALLINT NOT NULL CHECK (value IN (-1, 1)),
      organization_id TEXT,
      created_at TIMESTAMPTZ NOT NULL,
      PRIMARY KEY (track_id, staff_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS listen_logs (
      id TEXT PRIMARY KEY,
      staff_id TEXT NOT NULL,
      track_id TEXT NOT NULL,
      organization_id TEXT,
      listened_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresBackedStore(InMemoryStore):
    """Tracks, votes and listen logs live in PostgreSQL tables; directory data is snapshotted."""

    SNAPSHOT_TABLES: tuple[str, ...] = ("organizations", "staff", "memberships", "invites", "artists")

    def __init__(
        self,
        *,
        dsn: str,
        table_name: str = "sp_store_state",
        apply_rls: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._table_name = table_name.strip() or "sp_store_state"
        self._tx_runner = PostgresTxRunner(self._dsn)
        super().__init__(clock=clock)
        self._initialize_database()
        if apply_rls:
            PostgresRlsManager(self._dsn).apply()
        self._load_state()

    def _bind_repositories(self) -> None:
        self.tracks_repository = PostgresTracksRepository(tx_runner=self._tx_runner, table_name="tracks")
        self.votes_repository = PostgresVotesRepository(
            tx_runner=self._tx_runner,
            table_name="votes",
            tracks_table="tracks",
        )
        self.listen_logs_repository = PostgresListenLogsRepository(
            tx_runner=self._tx_runner,
            table_name="listen_logs",
        )

    def _connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._table_name} (
                      id INTEGER PRIMARY KEY CHECK (id = 1),
                      payload JSONB NOT NULL
                    )
                    """
                )
                for ddl in TABLE_DDL:
                    cur.execute(ddl)
            conn.commit()

    def _state_snapshot(self) -> dict[str, Any]:
        snapshot = super()._state_snapshot()
        for name in ("tracks", "votes", "listen_logs"):
            snapshot.pop(name, None)
        return snapshot

    def _persist_state(self) -> None:
        blob = json.dumps(self._state_snapshot(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        with self._lock:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO {self._table_name}(id, payload)
                        VALUES (1, %s::jsonb)
                        ON CONFLICT (id) DO UPDATE SET payload = EXCLUDED.payload
                        """,
                        (blob,),
                    )
                conn.commit()

    def _load_state(self) -> None:
        with self._lock:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT payload::text FROM {self._table_name} WHERE id = 1")
                    row = cur.fetchone()
        if row is None or not isinstance(row[0], str):
            return
        try:
            payload = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable postgres snapshot table=%s", self._table_name)
            return
        if isinstance(payload, dict):
            self._restore_state(payload)

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute("TRUNCATE TABLE votes, listen_logs, tracks")
                conn.commit()
        super().reset()
        self._persist_state()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("SP_STORE_BACKEND", "memory").strip().lower()
    if backend == "sqlite":
        db_path = env.get("SP_STORE_SQLITE_PATH", ".local/soundpath-store.sqlite3")
        return SqliteBackedStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when SP_STORE_BACKEND=postgres")
        table_name = env.get("SP_STORE_POSTGRES_TABLE", "sp_store_state")
        apply_rls = env.get("POSTGRES_APPLY_RLS", "false").strip().lower() in {"1", "true", "yes", "on"}
        return PostgresBackedStore(dsn=dsn, table_name=table_name, apply_rls=apply_rls)
    return InMemoryStore()


store = create_store_from_env()
