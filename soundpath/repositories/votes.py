from __future__ import annotations

from typing import Any

from soundpath.db.postgres import PostgresTxRunner
from soundpath.domain import ScopeFilter
from soundpath.repositories._sql import _validate_identifier, rows_as_dicts

VOTE_COLUMNS: tuple[str, ...] = ("track_id", "staff_id", "value", "organization_id", "created_at")


def _vote_key(track_id: str, staff_id: str) -> str:
    return f"{track_id}:{staff_id}"


class InMemoryVotesRepository:
    def __init__(self, votes: dict[str, dict[str, Any]], tracks: dict[str, dict[str, Any]]) -> None:
        self._votes = votes
        self._tracks = tracks

    def _recount(self, track_id: str) -> None:
        track = self._tracks.get(track_id)
        if track is not None:
            track["vote_total"] = self.total(scope=ScopeFilter.global_(), track_id=track_id)

    def get(self, *, scope: ScopeFilter, track_id: str, staff_id: str) -> dict[str, Any] | None:
        row = self._votes.get(_vote_key(track_id, staff_id))
        return None if row is None else dict(row)

    def list_for_tracks(self, *, scope: ScopeFilter, track_ids: list[str]) -> list[dict[str, Any]]:
        wanted = set(track_ids)
        return [dict(row) for row in self._votes.values() if row["track_id"] in wanted]

    def insert(self, *, scope: ScopeFilter, vote: dict[str, Any]) -> dict[str, Any] | None:
        key = _vote_key(str(vote["track_id"]), str(vote["staff_id"]))
        if key in self._votes:
            return None
        self._votes[key] = dict(vote)
        self._recount(str(vote["track_id"]))
        return dict(vote)

    def delete(self, *, scope: ScopeFilter, track_id: str, staff_id: str, organization_id: str | None) -> int:
        key = _vote_key(track_id, staff_id)
        row = self._votes.get(key)
        if row is None or row.get("organization_id") != organization_id:
            return 0
        del self._votes[key]
        self._recount(track_id)
        return 1

    def total(self, *, scope: ScopeFilter, track_id: str) -> int:
        return sum(int(row["value"]) for row in self._votes.values() if row["track_id"] == track_id)


class PostgresVotesRepository:
    """Votes repository for postgres backend; one row per (track_id, staff_id).

    Vote writes lock the parent track row and refresh its vote_total in the same
    transaction.
    """

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "votes",
        tracks_table: str = "tracks",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._tracks_table = _validate_identifier(tracks_table)
        self._lock_sql = f"SELECT id FROM {self._tracks_table} WHERE id = %s FOR UPDATE"
        self._recount_sql = f"""
            UPDATE {self._tracks_table}
            SET vote_total = (SELECT COALESCE(SUM(value), 0) FROM {self._table_name} WHERE track_id = %s)
            WHERE id = %s
        """

    def get(self, *, scope: ScopeFilter, track_id: str, staff_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {', '.join(VOTE_COLUMNS)}
            FROM {self._table_name}
            WHERE track_id = %s AND staff_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (track_id, staff_id))
                row = cur.fetchone()
            if row is None:
                return None
            return dict(zip(VOTE_COLUMNS, row, strict=True))

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def list_for_tracks(self, *, scope: ScopeFilter, track_ids: list[str]) -> list[dict[str, Any]]:
        if not track_ids:
            return []
        sql = f"""
            SELECT {', '.join(VOTE_COLUMNS)}
            FROM {self._table_name}
            WHERE track_id = ANY(%s)
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (list(track_ids),))
                return rows_as_dicts(cur, VOTE_COLUMNS)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def insert(self, *, scope: ScopeFilter, vote: dict[str, Any]) -> dict[str, Any] | None:
        sql = f"""
            INSERT INTO {self._table_name} ({', '.join(VOTE_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (track_id, staff_id) DO NOTHING
            RETURNING track_id
        """

        track_id = vote["track_id"]

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(self._lock_sql, (track_id,))
                cur.execute(sql, tuple(vote.get(col) for col in VOTE_COLUMNS))
                row = cur.fetchone()
                if row is None:
                    return None
                cur.execute(self._recount_sql, (track_id, track_id))
            return dict(vote)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def delete(self, *, scope: ScopeFilter, track_id: str, staff_id: str, organization_id: str | None) -> int:
        sql = f"""
            DELETE FROM {self._table_name}
            WHERE track_id = %s AND staff_id = %s
              AND organization_id IS NOT DISTINCT FROM %s
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(self._lock_sql, (track_id,))
                cur.execute(sql, (track_id, staff_id, organization_id))
                removed = int(cur.rowcount or 0)
                if removed:
                    cur.execute(self._recount_sql, (track_id, track_id))
            return removed

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def total(self, *, scope: ScopeFilter, track_id: str) -> int:
        sql = f"SELECT COALESCE(SUM(value), 0) FROM {self._table_name} WHERE track_id = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (track_id,))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)
