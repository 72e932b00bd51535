from __future__ import annotations

from datetime import datetime
from typing import Any

from soundpath.db.postgres import PostgresTxRunner
from soundpath.domain import ScopeFilter, parse_datetime
from soundpath.repositories._sql import _validate_identifier

LISTEN_COLUMNS: tuple[str, ...] = ("id", "staff_id", "track_id", "organization_id", "listened_at")


def _listen_scope(*, staff_id: str | None, organization_id: str | None) -> ScopeFilter:
    if organization_id is not None:
        return ScopeFilter.organizations([organization_id])
    return ScopeFilter.personal(str(staff_id or ""))


class InMemoryListenLogsRepository:
    def __init__(self, listen_logs: list[dict[str, Any]]) -> None:
        self._listen_logs = listen_logs

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        self._listen_logs.append(dict(event))
        return dict(event)

    def _in_window(self, row: dict[str, Any], *, organization_id: str | None, since: datetime) -> bool:
        if row.get("organization_id") != organization_id:
            return False
        listened_at = parse_datetime(row.get("listened_at"))
        return listened_at is not None and listened_at >= since

    def count(self, *, staff_id: str, organization_id: str | None, since: datetime) -> int:
        return sum(
            1
            for row in self._listen_logs
            if row.get("staff_id") == staff_id and self._in_window(row, organization_id=organization_id, since=since)
        )

    def counts_by_staff(self, *, organization_id: str, since: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        for row in self._listen_logs:
            if self._in_window(row, organization_id=organization_id, since=since):
                staff_id = str(row["staff_id"])
                counts[staff_id] = counts.get(staff_id, 0) + 1
        return counts


class PostgresListenLogsRepository:
    """Append-only listen events; counts are always windowed by workspace and time."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "listen_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} ({', '.join(LISTEN_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s)
        """
        scope = _listen_scope(staff_id=event.get("staff_id"), organization_id=event.get("organization_id"))

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(event.get(col) for col in LISTEN_COLUMNS))
            return dict(event)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def count(self, *, staff_id: str, organization_id: str | None, since: datetime) -> int:
        sql = f"""
            SELECT COUNT(*) FROM {self._table_name}
            WHERE staff_id = %s
              AND organization_id IS NOT DISTINCT FROM %s
              AND listened_at >= %s
        """
        scope = _listen_scope(staff_id=staff_id, organization_id=organization_id)

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (staff_id, organization_id, since))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def counts_by_staff(self, *, organization_id: str, since: datetime) -> dict[str, int]:
        sql = f"""
            SELECT staff_id, COUNT(*) FROM {self._table_name}
            WHERE organization_id = %s AND listened_at >= %s
            GROUP BY staff_id
        """

        def _op(conn: Any) -> dict[str, int]:
            with conn.cursor() as cur:
                cur.execute(sql, (organization_id, since))
                return {str(row[0]): int(row[1]) for row in cur.fetchall()}

        return self._tx_runner.run_in_tx(scope=ScopeFilter.organizations([organization_id]), fn=_op)
