"""Shared fixtures: in-memory store, fake calendar, recording channel."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytest

from chatbooking.availability import AvailabilityCache, AvailabilityResolver
from chatbooking.calendar_providers.base import BusyInterval, CalendarProvider, CreatedEvent
from chatbooking.channels.base import MessageChannel, SendResult
from chatbooking.context import TurnContext
from chatbooking.errors import CalendarError
from chatbooking.flows.templates import build_reservation_flow, load_review_flow
from chatbooking.interpreter import ConversationInterpreter
from chatbooking.models import AccountSettings, OutboundMessage
from chatbooking.repository import Store
from chatbooking.reservations import ReservationCreator


class FakeCalendarProvider(CalendarProvider):
    """Calendar double: fixed busy list, records created and deleted events."""

    def __init__(self, busy: Optional[list[BusyInterval]] = None) -> None:
        self.busy = list(busy or [])
        self.free_busy_calls = 0
        self.created: list[dict] = []
        self.deleted: list[tuple[str, str]] = []
        self.fail_free_busy = False
        self.fail_create = False
        self.fail_delete = False

    async def free_busy(self, calendar_id, time_min, time_max, time_zone):
        self.free_busy_calls += 1
        if self.fail_free_busy:
            raise CalendarError("freebusy unavailable", status_code=503)
        return [b for b in self.busy if b.start < time_max and b.end > time_min]

    async def create_event(self, summary, description, start, duration_minutes, time_zone, calendar_id):
        if self.fail_create:
            raise CalendarError("insert failed", status_code=500)
        event_id = f"evt-{len(self.created) + 1}"
        self.created.append(
            {
                "id": event_id,
                "summary": summary,
                "description": description,
                "start": start,
                "duration": duration_minutes,
                "time_zone": time_zone,
                "calendar_id": calendar_id,
            }
        )
        return CreatedEvent(id=event_id, calendar_id=calendar_id, time_zone=time_zone)

    async def delete_event(self, event_id, calendar_id):
        if self.fail_delete:
            raise CalendarError("delete failed", status_code=500)
        self.deleted.append((event_id, calendar_id))


class RecordingChannel(MessageChannel):
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.sent: list[tuple[str, OutboundMessage]] = []

    async def send_message(self, recipient_id: str, message: OutboundMessage) -> SendResult:
        self.sent.append((recipient_id, message))
        if not self.success:
            return SendResult(success=False, error="boom", status_code=500)
        return SendResult(success=True, message_id=f"mid-{len(self.sent)}")

    async def close(self) -> None:
        pass


def utc(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def ctx():
    return TurnContext(account_id="acct-1", request_id="req-test")


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def provider():
    return FakeCalendarProvider()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def account():
    return AccountSettings(
        account_id="acct-1",
        business_name="Trattoria Roma",
        vertical="gastro",
        calendar_id="cal-1",
        review_url="https://g.page/r/trattoria/review",
    )


@pytest.fixture
def booking_flow():
    return build_reservation_flow("gastro", "Trattoria Roma")


@pytest.fixture
def review_flow():
    return load_review_flow()


@pytest.fixture
def interpreter():
    return ConversationInterpreter()


@pytest.fixture
def resolver():
    return AvailabilityResolver(AvailabilityCache(ttl_seconds=120, max_entries=64), timeout_seconds=5)


@pytest.fixture
def creator(store, resolver):
    return ReservationCreator(store, resolver, timeout_seconds=5)
