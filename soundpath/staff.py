from __future__ import annotations

import logging
import re
from typing import Any

from soundpath.domain import Permissions, Role
from soundpath.errors import Forbidden, validation_failed
from soundpath.scope import ResolvedScope
from soundpath.usage import UsageLimiter

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _require_owner(scope: ResolvedScope) -> str:
    if scope.organization_id is None or scope.membership is None:
        raise Forbidden("staff administration requires an organization workspace")
    if scope.membership.role != Role.OWNER:
        raise Forbidden("only the organization owner can manage staff")
    return scope.organization_id


class StaffAdmin:
    def __init__(self, store: Any, limiter: UsageLimiter) -> None:
        self.store = store
        self.limiter = limiter

    def invite_staff(self, scope: ResolvedScope, inviter_id: str, *, email: str, role: Role | str) -> dict[str, Any]:
        organization_id = _require_owner(scope)
        normalized = email.strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise validation_failed(f"invalid email address: {email}")
        parsed_role = Role.parse(role)
        existing = [x for x in self.store.list_invites(organization_id=organization_id) if x["email"] == normalized]
        if not existing:
            self.limiter.ensure_within_limit(organization_id, "staff")
        invite = self.store.upsert_invite(
            organization_id=organization_id,
            email=normalized,
            role=parsed_role,
            permissions=Permissions.defaults_for_role(parsed_role).as_dict(),
            invited_by=inviter_id,
        )
        logger.info("staff invited organization_id=%s role=%s", organization_id, parsed_role.value)
        return invite

    def update_permissions(self, scope: ResolvedScope, staff_id: str, permissions: dict[str, bool]) -> dict[str, Any]:
        organization_id = _require_owner(scope)
        unknown = set(permissions) - set(Permissions.MEMBERSHIP_DEFAULTS)
        if unknown:
            raise validation_failed(f"unknown permission flags: {sorted(unknown)}")
        row = self.store.get_active_membership(staff_id=staff_id, organization_id=organization_id)
        if row is None:
            raise validation_failed(f"no active membership for staff member: {staff_id}")
        merged = {**(row.get("permissions") or {}), **{k: bool(v) for k, v in permissions.items()}}
        return self.store.update_membership(staff_id=staff_id, organization_id=organization_id, permissions=merged)

    def deactivate(self, scope: ResolvedScope, actor_id: str, staff_id: str) -> dict[str, Any]:
        organization_id = _require_owner(scope)
        if staff_id == actor_id:
            raise validation_failed("owners cannot deactivate their own membership")
        updated = self.store.update_membership(staff_id=staff_id, organization_id=organization_id, active=False)
        if updated is None:
            raise validation_failed(f"no membership for staff member: {staff_id}")
        logger.info("membership deactivated organization_id=%s staff_id=%s", organization_id, staff_id)
        return updated
