from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class GateError(ApiError):
    """A workflow precondition is not met; user-facing, never retried."""

    ENERGY_REQUIRED = "ENERGY_REQUIRED"
    CONTRACT_NOT_SIGNED = "CONTRACT_NOT_SIGNED"
    ALREADY_FINAL = "ALREADY_FINAL"
    REASON_REQUIRED = "REASON_REQUIRED"
    TRACK_ARCHIVED = "TRACK_ARCHIVED"
    TRACK_CHANGED = "TRACK_CHANGED"

    def __init__(self, code: str, message: str) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=422 if code == self.REASON_REQUIRED else 409,
        )


class Forbidden(ApiError):
    def __init__(self, message: str, *, permission: str = "") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
        self.permission = permission


class QuotaExceeded(ApiError):
    def __init__(self, message: str, *, resource: str) -> None:
        super().__init__(
            code="QUOTA_EXCEEDED",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=402,
        )
        self.resource = resource


class ScopeResolutionFailed(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="SCOPE_RESOLUTION_FAILED",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class TransientStoreError(ApiError):
    def __init__(self, message: str = "store temporarily unavailable") -> None:
        super().__init__(
            code="STORE_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )


def track_not_found(track_id: str) -> ApiError:
    return ApiError(
        code="TRACK_NOT_FOUND",
        message=f"track not found: {track_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def validation_failed(message: str) -> ApiError:
    return ApiError(
        code="VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )
