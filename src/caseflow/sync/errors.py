"""
Error taxonomy for mobile sync.

Request-level errors (validation, capacity, access) reject a whole call
and are rendered by the application exception handler. Per-record
errors are caught by the change processor and reported inline.
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for sync failures carrying a wire error code."""

    status_code = 500
    default_code = "SYNC_FAILED"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class ValidationError(SyncError):
    """Malformed or missing request fields."""

    status_code = 400
    default_code = "VALIDATION_FAILED"


class NotFoundError(SyncError):
    """Entity id unknown to the store."""

    status_code = 404
    default_code = "NOT_FOUND"


class AccessDeniedError(SyncError):
    """Role or assignment does not allow the operation."""

    status_code = 403
    default_code = "ACCESS_DENIED"


class ConflictError(SyncError):
    """
    Server state is newer than the client's edit.

    Not a failure: the processor turns it into a conflicted outcome
    carrying both versions.
    """

    status_code = 409
    default_code = "VERSION_CONFLICT"

    def __init__(
        self,
        message: str,
        server_version: Optional[dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.server_version = server_version


class InvalidTransitionError(SyncError):
    """Status change out of a terminal status without override rights."""

    status_code = 409
    default_code = "INVALID_STATUS_TRANSITION"


class CapacityError(SyncError):
    """Requested batch exceeds the configured maximum."""

    status_code = 413
    default_code = "SYNC_BATCH_TOO_LARGE"


class VersionUnsupportedError(SyncError):
    """Mobile app build is older than the minimum supported version."""

    status_code = 426
    default_code = "APP_VERSION_UNSUPPORTED"
