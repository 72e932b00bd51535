from __future__ import annotations

import re
from typing import Any

from soundpath.domain import ScopeFilter


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def scope_clause(scope: ScopeFilter, *, owner_column: str = "recipient_user_id") -> tuple[str, list[Any]]:
    """Translate a scope filter into a WHERE fragment plus parameters."""
    owner_column = _validate_identifier(owner_column)
    if scope.kind == ScopeFilter.GLOBAL:
        return "TRUE", []
    if scope.kind == ScopeFilter.PERSONAL:
        return f"organization_id IS NULL AND {owner_column} = %s", [scope.owner_id]
    if scope.kind == ScopeFilter.ORGANIZATIONS:
        return "organization_id = ANY(%s)", [list(scope.organization_ids)]
    return "FALSE", []


def rows_as_dicts(cur: Any, columns: tuple[str, ...]) -> list[dict[str, Any]]:
    return [dict(zip(columns, row, strict=True)) for row in cur.fetchall()]
