"""
Custom exceptions for the bucketed log cache.

All cache components raise these exceptions so callers can handle
remote, storage and programming errors consistently.
"""


class LogCacheError(Exception):
    """Base exception for all log cache errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NetworkUnavailableError(LogCacheError):
    """Raised when the remote log transport cannot be reached.

    Covers bucket listing, item fetch, append and attachment download.
    Pagination surfaces it to the caller; the attachment path retries it.
    """

    def __init__(self, operation: str, log_id: str | None = None, cause: Exception | None = None):
        details: dict = {"operation": operation}
        if log_id:
            details["log_id"] = log_id
        if cause:
            details["cause"] = str(cause)
        message = f"Remote log unavailable during {operation}"
        if log_id:
            message += f" (log {log_id})"
        super().__init__(message, details)
        self.operation = operation
        self.log_id = log_id
        self.cause = cause


class DownloadExhaustedError(LogCacheError):
    """Raised when an attachment download fails on every allowed attempt."""

    def __init__(self, attachment_ref: str, attempts: int, cause: Exception | None = None):
        details: dict = {"attachment_ref": attachment_ref, "attempts": attempts}
        if cause:
            details["cause"] = str(cause)
        super().__init__(
            f"Failed to download attachment {attachment_ref} after {attempts} attempts",
            details,
        )
        self.attachment_ref = attachment_ref
        self.attempts = attempts
        self.cause = cause


class InvariantViolationError(LogCacheError):
    """Raised on programming errors such as negative bucket numbers."""

    def __init__(self, reason: str, log_id: str | None = None, bucket: int | None = None):
        details: dict = {"reason": reason}
        if log_id:
            details["log_id"] = log_id
        if bucket is not None:
            details["bucket"] = bucket
        super().__init__(f"Invariant violation: {reason}", details)
        self.reason = reason
        self.log_id = log_id
        self.bucket = bucket


class LogNotRegisteredError(LogCacheError):
    """Raised when an operation targets a log the engine does not know."""

    def __init__(self, log_id: str):
        super().__init__(f"Log not registered: {log_id}", {"log_id": log_id})
        self.log_id = log_id


class StorageIOError(LogCacheError):
    """Raised when a local persistence operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause
