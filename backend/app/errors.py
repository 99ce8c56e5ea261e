"""Typed API errors. Each carries the HTTP status and a stable machine-readable code."""
from typing import Any, Optional


class AppError(Exception):
    """Base class for errors rendered as ``{success: false, error: {...}}``."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self, include_details: bool = True) -> dict:
        error: dict[str, Any] = {"message": self.message, "code": self.code}
        if include_details and self.details is not None:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class PathSafetyError(AppError):
    status_code = 403
    code = "PATH_SAFETY_VIOLATION"


class ConversionTimeoutError(AppError):
    status_code = 408
    code = "PROCESSING_TIMEOUT"


class ResourceLimitError(AppError):
    status_code = 413
    code = "RESOURCE_LIMIT_EXCEEDED"


class QuotaExceededError(AppError):
    status_code = 429
    code = "QUOTA_EXCEEDED"


class RateLimitError(AppError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"


class ProcessingError(AppError):
    status_code = 500
    code = "PROCESSING_ERROR"


class CleanupError(AppError):
    """Raised internally when a temp file cannot be removed. Never sent to clients."""

    code = "CLEANUP_ERROR"
