from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from soundpath.domain import (
    Identity,
    Membership,
    OrganizationWorkspace,
    Permissions,
    PersonalWorkspace,
    ScopeFilter,
    Workspace,
)
from soundpath.errors import ScopeResolutionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedScope:
    filter: ScopeFilter
    permissions: Permissions
    workspace: Workspace | None = None
    membership: Membership | None = None

    @property
    def is_empty(self) -> bool:
        return self.filter.is_empty

    @property
    def organization_id(self) -> str | None:
        if isinstance(self.workspace, OrganizationWorkspace):
            return self.workspace.organization_id
        return None

    @property
    def is_personal(self) -> bool:
        return isinstance(self.workspace, PersonalWorkspace)

    @classmethod
    def empty(cls, workspace: Workspace | None = None) -> "ResolvedScope":
        return cls(filter=ScopeFilter.empty(), permissions=Permissions.none(), workspace=workspace)


class ScopeResolver:
    """Turns (identity, workspace) into the row filter and effective permissions."""

    def __init__(self, store: Any) -> None:
        self.store = store
        self._hierarchy_cache: dict[str, list[str]] = {}

    def reset(self) -> None:
        self._hierarchy_cache.clear()

    def _hierarchy(self, organization_id: str) -> list[str]:
        cached = self._hierarchy_cache.get(organization_id)
        if cached is None:
            cached = list(self.store.expand_org_hierarchy(organization_id))
            self._hierarchy_cache[organization_id] = cached
        return cached

    def resolve_strict(self, identity: Identity, workspace: Workspace | None) -> ResolvedScope:
        if identity is None or not identity.staff_id:
            raise ScopeResolutionFailed("no authenticated identity")
        if self.store.get_staff(identity.staff_id) is None:
            raise ScopeResolutionFailed(f"unknown staff member: {identity.staff_id}")

        if workspace is None:
            if identity.is_system_admin:
                return ResolvedScope(filter=ScopeFilter.global_(), permissions=Permissions.all_granted())
            raise ScopeResolutionFailed("no workspace selected")

        if isinstance(workspace, PersonalWorkspace):
            if workspace.owner_id != identity.staff_id:
                raise ScopeResolutionFailed("personal workspace belongs to another staff member")
            return ResolvedScope(
                filter=ScopeFilter.personal(identity.staff_id),
                permissions=Permissions.all_granted(),
                workspace=workspace,
            )

        if isinstance(workspace, OrganizationWorkspace):
            row = self.store.get_active_membership(
                staff_id=identity.staff_id,
                organization_id=workspace.organization_id,
            )
            if row is None:
                raise ScopeResolutionFailed("No active membership found")
            membership = Membership.from_row(row)
            hierarchy = self._hierarchy(workspace.organization_id)
            if not hierarchy:
                raise ScopeResolutionFailed(f"organization hierarchy unavailable: {workspace.organization_id}")
            subsidiary = (workspace.subsidiary_filter or "all").strip()
            if subsidiary == "all":
                scope_filter = ScopeFilter.organizations(hierarchy)
            elif subsidiary in hierarchy:
                scope_filter = ScopeFilter.organizations([subsidiary])
            else:
                raise ScopeResolutionFailed(f"subsidiary outside organization hierarchy: {subsidiary}")
            return ResolvedScope(
                filter=scope_filter,
                permissions=membership.permissions,
                workspace=workspace,
                membership=membership,
            )

        raise ScopeResolutionFailed(f"unsupported workspace: {workspace!r}")

    def resolve(self, identity: Identity, workspace: Workspace | None) -> ResolvedScope:
        try:
            return self.resolve_strict(identity, workspace)
        except ScopeResolutionFailed as exc:
            logger.warning(
                "%s staff_id=%s workspace=%r: %s",
                exc.code,
                getattr(identity, "staff_id", None),
                workspace,
                exc.message,
            )
            return ResolvedScope.empty(workspace)
