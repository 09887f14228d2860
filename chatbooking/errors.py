"""Exception hierarchy shared by the booking components."""

from __future__ import annotations


class ChatBookingError(Exception):
    """Base class for all errors raised by this package."""


class FlowValidationError(ChatBookingError):
    """A flow graph failed its structural checks."""

    def __init__(self, message: str, issues: list | None = None):
        self.issues = list(issues or [])
        super().__init__(message)


class CalendarError(ChatBookingError):
    """Raised when a calendar provider call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(ChatBookingError):
    """A repository write did not go through."""


class ChannelError(ChatBookingError):
    """Raised by message channels when a send cannot be attempted at all."""
