"""Calendar provider abstractions and implementations."""

from .base import BusyInterval, CalendarProvider, CreatedEvent

__all__ = ["BusyInterval", "CalendarProvider", "CreatedEvent"]
