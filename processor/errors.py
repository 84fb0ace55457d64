"""Error types raised at the boundaries of the sync and notification paths."""
from typing import Optional


class ShiftSyncError(Exception):
    """Base class for recoverable sync and notification errors."""


class FetchError(ShiftSyncError):
    """Feed could not be retrieved (HTTP status, network failure or timeout)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is not None:
            return f"HTTP {self.status}: {self.message}"
        return self.message


class ParseError(ShiftSyncError):
    """Feed content is not a readable iCalendar document."""


class StoreError(ShiftSyncError):
    """Query or commit against the event store failed."""


class DeliveryError(ShiftSyncError):
    """Push notification could not be handed to the delivery channel."""
