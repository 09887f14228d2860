"""Abstract base class for calendar providers.

Defines the interface for reading busy intervals and creating or deleting
events.  Any calendar backend (Google, Outlook, etc.) implements this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class BusyInterval:
    """A half-open range ``[start, end)`` during which the calendar is occupied."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass(frozen=True)
class CreatedEvent:
    """What the provider reports back after inserting an event."""

    id: str
    html_link: str = ""
    calendar_id: str = ""
    time_zone: str = ""


class CalendarProvider(ABC):
    """Abstract calendar backend.

    Credentials are bound when the provider is constructed; callers build a
    provider per account (and per call when the host hands out short-lived
    bearer tokens).
    """

    @abstractmethod
    async def free_busy(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> list[BusyInterval]:
        """Return busy intervals overlapping ``[time_min, time_max]``.

        Args:
            calendar_id: The calendar to query.
            time_min: Aware start of the query window.
            time_max: Aware end of the query window.
            time_zone: IANA zone the provider should use for the response.

        Returns:
            Busy intervals with aware datetimes, sorted by start.
        """

    @abstractmethod
    async def create_event(
        self,
        summary: str,
        description: str,
        start: datetime,
        duration_minutes: int,
        time_zone: str,
        calendar_id: str,
    ) -> CreatedEvent:
        """Create an event.

        Args:
            summary: Event title.
            description: Free-form details.
            start: Wall-clock start in ``time_zone`` (naive) or an aware datetime.
            duration_minutes: Event length.
            time_zone: IANA zone name.
            calendar_id: The calendar to create the event on.
        """

    @abstractmethod
    async def delete_event(self, event_id: str, calendar_id: str) -> None:
        """Delete an event; deleting an already-deleted event is not an error."""
