from __future__ import annotations

from datetime import date, datetime
from typing import Any

from soundpath.db.postgres import PostgresTxRunner
from soundpath.domain import ScopeFilter, parse_date, parse_datetime
from soundpath.repositories._sql import _validate_identifier, rows_as_dicts, scope_clause

TRACK_COLUMNS: tuple[str, ...] = (
    "id",
    "title",
    "artist_name",
    "artist_id",
    "genre",
    "bpm",
    "energy",
    "phase",
    "archived",
    "rejection_reason",
    "vote_total",
    "created_at",
    "moved_to_second_listen_at",
    "target_release_date",
    "release_date",
    "organization_id",
    "recipient_user_id",
    "contract_signed",
    "watched",
    "total_earnings",
    "spotify_plays",
    "link",
)

UPDATABLE_COLUMNS = frozenset(TRACK_COLUMNS) - {"id", "created_at", "organization_id", "recipient_user_id"}


def _check_updates(updates: dict[str, Any]) -> dict[str, Any]:
    unknown = set(updates) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"track columns are not updatable: {sorted(unknown)}")
    return dict(updates)


def _check_expected(expected: dict[str, Any] | None) -> dict[str, Any]:
    unknown = set(expected or {}) - set(TRACK_COLUMNS)
    if unknown:
        raise ValueError(f"unknown track columns in guard: {sorted(unknown)}")
    return dict(expected or {})


class InMemoryTracksRepository:
    def __init__(self, tracks: dict[str, dict[str, Any]]) -> None:
        self._tracks = tracks

    def insert(self, *, track: dict[str, Any]) -> dict[str, Any]:
        self._tracks[str(track["id"])] = dict(track)
        return dict(track)

    def get(self, *, scope: ScopeFilter, track_id: str) -> dict[str, Any] | None:
        row = self._tracks.get(track_id)
        if row is None or not scope.matches(row):
            return None
        return dict(row)

    def query(
        self,
        *,
        scope: ScopeFilter,
        phase: str | None = None,
        archived: bool | None = None,
        released_on_or_before: date | None = None,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        rows = []
        for row in self._tracks.values():
            if not scope.matches(row):
                continue
            if phase is not None and row.get("phase") != phase:
                continue
            if archived is not None and bool(row.get("archived")) != archived:
                continue
            if released_on_or_before is not None:
                release = parse_date(row.get("release_date"))
                if release is None or release > released_on_or_before:
                    continue
            rows.append(dict(row))
        rows.sort(key=lambda x: parse_datetime(x.get("created_at")) or datetime.min, reverse=descending)
        return rows

    def update(
        self,
        *,
        scope: ScopeFilter,
        track_id: str,
        updates: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        changes = _check_updates(updates)
        guards = _check_expected(expected)
        row = self._tracks.get(track_id)
        if row is None or not scope.matches(row):
            return None
        if any(row.get(col) != value for col, value in guards.items()):
            return None
        row.update(changes)
        return dict(row)

    def count_created(self, *, scope: ScopeFilter, since: datetime) -> int:
        total = 0
        for row in self._tracks.values():
            created_at = parse_datetime(row.get("created_at"))
            if scope.matches(row) and created_at is not None and created_at >= since:
                total += 1
        return total


class PostgresTracksRepository:
    """Tracks repository for postgres backend; every query carries the workspace predicate."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "tracks") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def insert(self, *, track: dict[str, Any]) -> dict[str, Any]:
        payload = {col: track.get(col) for col in TRACK_COLUMNS}
        if payload["organization_id"] is not None:
            scope = ScopeFilter.organizations([payload["organization_id"]])
        else:
            scope = ScopeFilter.personal(str(payload["recipient_user_id"]))
        placeholders = ", ".join(["%s"] * len(TRACK_COLUMNS))
        sql = f"INSERT INTO {self._table_name} ({', '.join(TRACK_COLUMNS)}) VALUES ({placeholders})"

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(payload[col] for col in TRACK_COLUMNS))
            return dict(track)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def get(self, *, scope: ScopeFilter, track_id: str) -> dict[str, Any] | None:
        where, params = scope_clause(scope)
        sql = f"""
            SELECT {', '.join(TRACK_COLUMNS)}
            FROM {self._table_name}
            WHERE {where} AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (*params, track_id))
                row = cur.fetchone()
            if row is None:
                return None
            return dict(zip(TRACK_COLUMNS, row, strict=True))

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def query(
        self,
        *,
        scope: ScopeFilter,
        phase: str | None = None,
        archived: bool | None = None,
        released_on_or_before: date | None = None,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        where, params = scope_clause(scope)
        clauses = [where]
        if phase is not None:
            clauses.append("phase = %s")
            params.append(phase)
        if archived is not None:
            clauses.append("archived = %s")
            params.append(archived)
        if released_on_or_before is not None:
            clauses.append("release_date IS NOT NULL AND release_date <= %s")
            params.append(released_on_or_before)
        direction = "DESC" if descending else "ASC"
        sql = f"""
            SELECT {', '.join(TRACK_COLUMNS)}
            FROM {self._table_name}
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at {direction}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                return rows_as_dicts(cur, TRACK_COLUMNS)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def update(
        self,
        *,
        scope: ScopeFilter,
        track_id: str,
        updates: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        changes = _check_updates(updates)
        guards = _check_expected(expected)
        if not changes:
            return self.get(scope=scope, track_id=track_id)
        where, params = scope_clause(scope)
        assignments = ", ".join(f"{col} = %s" for col in changes)
        guard_sql = "".join(f" AND {col} = %s" for col in guards)
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}
            WHERE {where} AND id = %s{guard_sql}
            RETURNING {', '.join(TRACK_COLUMNS)}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (*changes.values(), *params, track_id, *guards.values()))
                row = cur.fetchone()
            if row is None:
                return None
            return dict(zip(TRACK_COLUMNS, row, strict=True))

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def count_created(self, *, scope: ScopeFilter, since: datetime) -> int:
        where, params = scope_clause(scope)
        sql = f"SELECT COUNT(*) FROM {self._table_name} WHERE {where} AND created_at >= %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (*params, since))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)
