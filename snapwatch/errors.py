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


class ValidationError(ApiError):
    """Malformed submission; rejected before anything is enqueued."""

    def __init__(self, message: str, *, code: str = "REQ_VALIDATION_FAILED", details: list | None = None) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )
        self.details = list(details or [])


class TenantContextError(ApiError):
    def __init__(self, message: str = "tenant boundary required", *, code: str = "TENANT_SCOPE_VIOLATION") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class QuotaExceededError(ApiError):
    def __init__(self, message: str = "monthly capture limit reached") -> None:
        super().__init__(
            code="QUOTA_EXCEEDED",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=429,
        )


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "RESOURCE_NOT_FOUND") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class ConflictError(ApiError):
    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


class CaptureError(ApiError):
    """Raised by job handlers; ``retryable`` decides whether the orchestrator backs off or fails."""


class TransientCaptureError(CaptureError):
    def __init__(self, message: str, *, code: str = "CAPTURE_TRANSIENT") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )


class PermanentCaptureError(CaptureError):
    def __init__(self, message: str, *, code: str = "CAPTURE_PERMANENT") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="permanent",
            retryable=False,
            http_status=422,
        )


class StorageError(CaptureError):
    def __init__(self, message: str, *, code: str = "STORAGE_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="storage",
            retryable=False,
            http_status=500,
        )
