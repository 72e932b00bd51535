from __future__ import annotations

from collections.abc import Callable
from typing import Any

from soundpath.domain import ScopeFilter
from soundpath.errors import TransientStoreError


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def scope_settings(scope: ScopeFilter) -> list[tuple[str, str]]:
    return [
        ("app.scope_kind", scope.kind),
        ("app.current_owner", scope.owner_id or ""),
        ("app.current_orgs", ",".join(scope.organization_ids)),
    ]


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with workspace scope session injection."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        scope: ScopeFilter,
        fn: Callable[[Any], Any],
    ) -> Any:
        if scope.is_empty:
            raise ValueError("scope must not be empty")

        psycopg = _import_psycopg()
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    for name, value in scope_settings(scope):
                        cur.execute("SELECT set_config(%s, %s, true)", (name, value))
                result = fn(conn)
                conn.commit()
                return result
        except psycopg.OperationalError as exc:
            raise TransientStoreError(f"postgres unavailable: {exc}") from exc
