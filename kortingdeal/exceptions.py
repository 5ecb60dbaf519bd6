"""
Feed sync exception classes.

Every error that can end up on a SyncRun carries a message that is stored
verbatim as ``error_message``.
"""
from typing import Any, Dict, Optional


class FeedSyncError(Exception):
    """
    Base exception for pipeline errors.

    Attributes:
        message: human-readable message, stored on the run record
        error_code: short machine code, defaults to the class name
        context: extra details for logging
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(FeedSyncError):
    """Required configuration (feed URL, template) is missing."""


class FeedUnavailable(FeedSyncError):
    """
    The feed could not be fetched: non-2xx response or network failure.

    Attributes:
        status_code: HTTP status when a response was received
    """

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class DecodeFailure(FeedSyncError):
    """Neither gzip nor plain-text decoding produced a usable CSV feed."""

    HINT = "check the configured feed id and API credentials"

    def __init__(self, message: str, **kwargs):
        super().__init__(f"{message} ({self.HINT})", **kwargs)


class BatchUpsertFailure(FeedSyncError):
    """The store rejected one batch. Recovered by skipping the batch."""

    def __init__(self, message: str, batch_number: int, size: int, **kwargs):
        self.batch_number = batch_number
        self.size = size
        super().__init__(message, **kwargs)


class SyncCancelled(FeedSyncError):
    """Raised at a checkpoint once cancellation was requested."""
