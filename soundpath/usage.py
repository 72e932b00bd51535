from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from soundpath.errors import ApiError, QuotaExceeded, TransientStoreError

logger = logging.getLogger(__name__)

LIMIT_MESSAGES: dict[str, str] = {
    "tracks": "Track limit reached. Please upgrade your plan to add more tracks.",
    "contacts": "Artist Directory contact limit reached. Please upgrade your plan to add more contacts.",
    "staff": "Staff member limit reached. Please upgrade your plan to add more staff members.",
    "vault_tracks": "Vault limit reached. Please upgrade your plan to add more tracks to the vault.",
}

WARNING_REMAINING = 5


class UsageLimiter:
    """Quota gate plus a per-organization usage report cache.

    A cached report is served while the store has seen no write since it was
    built and it is younger than ``max_age_s``.
    """

    def __init__(
        self,
        store: Any,
        *,
        max_age_s: float = 900.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.max_age_s = max(0.0, float(max_age_s))
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        # organization id -> (store revision, built at, report)
        self._reports: dict[str, tuple[int, float, dict[str, Any]]] = {}

    def ensure_within_limit(self, organization_id: str | None, resource: str) -> None:
        if resource not in LIMIT_MESSAGES:
            raise ValueError(f"unknown usage resource: {resource}")
        if organization_id is None:
            return
        try:
            allowed = self.store.check_usage_limit(organization_id=organization_id, resource=resource)
        except ApiError:
            raise
        except OSError as exc:
            raise TransientStoreError(f"usage check failed: {exc}") from exc
        if not allowed:
            logger.info("quota refused organization_id=%s resource=%s", organization_id, resource)
            raise QuotaExceeded(LIMIT_MESSAGES[resource], resource=resource)

    def usage_report(self, organization_id: str | None) -> dict[str, Any]:
        if organization_id is None:
            return {}
        revision = self.store.revision
        raw = self.store.get_usage(organization_id=organization_id)
        report: dict[str, Any] = {}
        for resource, entry in raw.items():
            limit = int(entry["limit"])
            current = int(entry["current"])
            if limit == -1:
                report[resource] = {
                    "limit": -1,
                    "current": current,
                    "remaining": "unlimited",
                    "percentage": 0,
                    "at_limit": False,
                    "warning": False,
                }
                continue
            remaining = max(0, limit - current)
            percentage = 100 if limit <= 0 else min(100, round(current / limit * 100))
            report[resource] = {
                "limit": limit,
                "current": current,
                "remaining": remaining,
                "percentage": percentage,
                "at_limit": current >= limit,
                "warning": remaining <= WARNING_REMAINING,
            }
        with self._lock:
            self._reports[organization_id] = (revision, self._clock(), report)
        return report

    def cached_report(self, organization_id: str | None) -> dict[str, Any] | None:
        if organization_id is None:
            return None
        with self._lock:
            entry = self._reports.get(organization_id)
        if entry is None:
            return None
        revision, built_at, report = entry
        if revision != self.store.revision or self._clock() - built_at >= self.max_age_s:
            return None
        return report

    def report(self, organization_id: str | None) -> dict[str, Any]:
        cached = self.cached_report(organization_id)
        if cached is not None:
            return cached
        return self.usage_report(organization_id)

    def refresh_all(self) -> dict[str, dict[str, Any]]:
        """Rebuild the report of every organization and log resources near their limit."""
        reports: dict[str, dict[str, Any]] = {}
        for org in self.store.list_organizations():
            organization_id = str(org["id"])
            report = self.usage_report(organization_id)
            reports[organization_id] = report
            for resource, entry in report.items():
                if entry["at_limit"]:
                    logger.warning("usage at limit organization_id=%s resource=%s", organization_id, resource)
                elif entry["warning"]:
                    logger.info("usage near limit organization_id=%s resource=%s", organization_id, resource)
        return reports
