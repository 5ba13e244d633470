"""Error taxonomy shared by services and routes.

Every ``TeleCloudError`` maps to one HTTP status. ``RateLimited`` is not part
of that hierarchy: blob backends raise it and the upload path absorbs it.
"""
from typing import Any, Optional


class TeleCloudError(Exception):
    """Base for errors that are rendered as a JSON response."""

    status_code = 500

    def __init__(self, message: str, extra: Optional[dict[str, Any]] = None):
        self.message = message
        self.extra = extra or {}
        super().__init__(message)


class InvalidRequest(TeleCloudError):
    status_code = 400


class Forbidden(TeleCloudError):
    status_code = 403


class NotFound(TeleCloudError):
    status_code = 404


class Conflict(TeleCloudError):
    status_code = 409


class RangeNotSatisfiable(TeleCloudError):
    status_code = 416

    def __init__(self, message: str, file_size: int):
        self.file_size = file_size
        super().__init__(message)


class BackendFailure(TeleCloudError):
    """Blob backend error other than rate limiting (HTTP error, timeout, bad payload)."""
    status_code = 500


class CorruptRecord(TeleCloudError):
    """A persisted FileRecord could not be parsed into the expected shape."""
    status_code = 500


class RateLimited(Exception):
    """Backend asked us to slow down. Retried by the caller, never surfaced."""

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(f"Rate limited, retry after {retry_after}s")
