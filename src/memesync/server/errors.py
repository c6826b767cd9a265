"""Error taxonomy for the MemeSync server.

Every error carries the HTTP status code it maps to. The app installs an
exception handler that renders them as ``{"success": false, "error": ...}``.
"""

from __future__ import annotations


class MemeSyncError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(MemeSyncError):
    """Missing or malformed fields in a request."""

    status_code = 400


class AuthError(MemeSyncError):
    """Absent, invalid or expired token, or wrong password."""

    status_code = 401


class LimitReachedError(MemeSyncError):
    """A share has reached its download limit."""

    status_code = 403


class QuotaExceededError(MemeSyncError):
    """A configured ceiling would be breached; the operation is aborted."""

    status_code = 403


class NotFoundError(MemeSyncError):
    """Unknown identifier."""

    status_code = 404


class ExpiredError(MemeSyncError):
    """A share is past its expiry time."""

    status_code = 410


class RateLimitError(MemeSyncError):
    """Too many requests within a window."""

    status_code = 429


class ConfigurationError(MemeSyncError):
    """The server is misconfigured for the requested operation."""

    status_code = 500


class StorageIOError(MemeSyncError):
    """An object-store or relational-store call failed."""

    status_code = 500


class ObjectNotFoundError(NotFoundError):
    """Raised when an object is not found in the object store."""
