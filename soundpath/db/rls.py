from __future__ import annotations

import re

from soundpath.db.postgres import _import_psycopg

_GLOBAL = "current_setting('app.scope_kind', true) = 'global'"
_ORG_MEMBER = (
    "(current_setting('app.scope_kind', true) = 'organizations' "
    "AND {table}.organization_id = ANY(string_to_array(current_setting('app.current_orgs', true), ',')))"
)
_PERSONAL_OWNER = (
    "(current_setting('app.scope_kind', true) = 'personal' "
    "AND {table}.organization_id IS NULL "
    "AND {table}.{owner_column} = current_setting('app.current_owner', true))"
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def workspace_predicate(table: str, *, owner_column: str) -> str:
    table = _validate_identifier(table)
    owner_column = _validate_identifier(owner_column)
    return " OR ".join(
        [
            _GLOBAL,
            _ORG_MEMBER.format(table=table),
            _PERSONAL_OWNER.format(table=table, owner_column=owner_column),
        ]
    )


class PostgresRlsManager:
    """Apply workspace isolation policies on PostgreSQL tables."""

    # table -> column holding the personal owner
    DEFAULT_TABLES: dict[str, str] = {
        "tracks": "recipient_user_id",
        "artists": "recipient_user_id",
        "listen_logs": "staff_id",
    }

    def __init__(self, dsn: str, *, tables: dict[str, str] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = dict(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = {
            _validate_identifier(name): _validate_identifier(owner) for name, owner in target_tables.items()
        }

    def _statements(self) -> list[tuple[str, str]]:
        statements: list[tuple[str, str]] = []
        for table, owner_column in self._tables.items():
            predicate = workspace_predicate(table, owner_column=owner_column)
            statements.append((table, predicate))
        # votes follow the visibility of their track
        statements.append(("votes", "EXISTS (SELECT 1 FROM tracks t WHERE t.id = votes.track_id)"))
        return statements

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        applied: list[str] = []
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for table, predicate in self._statements():
                    policy = f"{table}_workspace_isolation"
                    cur.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                    cur.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                    cur.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
                    cur.execute(
                        f"""
                        CREATE POLICY {policy} ON {table}
                        USING ({predicate})
                        WITH CHECK ({predicate})
                        """
                    )
                    applied.append(table)
            conn.commit()
        return applied
