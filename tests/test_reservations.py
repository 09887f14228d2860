"""Tests for reservation creation, calendar rollback and local-only fallback."""

import asyncio
import logging
from datetime import datetime

from chatbooking.calendar_providers.base import BusyInterval
from chatbooking.errors import PersistenceError
from chatbooking.models import AccountSettings, ReservationStatus
from chatbooking.repository import InMemoryRepository, Store
from chatbooking.reservations import (
    AVAILABILITY_ERROR,
    CALENDAR_ERROR,
    CALENDAR_NOT_CONNECTED,
    CALENDAR_STORE_FAILED,
    CREATED,
    DUPLICATE,
    MISSING_FIELDS,
    SLOT_UNAVAILABLE,
    STORE_FAILED,
    ReservationCreator,
    dedup_key,
    reservation_id_for,
)

from tests.conftest import FakeCalendarProvider, utc

VARIABLES = {"name": "Maria", "date": "2025-03-15", "time": "19:00", "guestCount": 4}


class FailingRepository(InMemoryRepository):
    async def insert_if_absent(self, value, key=None):
        raise PersistenceError("database unavailable")


class RacingRepository(InMemoryRepository):
    """Another request stores the same reservation between the pre-check and the insert."""

    async def insert_if_absent(self, value, key=None):
        await super().insert_if_absent(value.model_copy(update={"external_event_id": "evt-other"}), key)
        return await super().insert_if_absent(value, key)


class TestCreate:
    async def test_creates_event_and_reservation(self, ctx, store, creator, account, provider):
        result = await creator.create(ctx, account, provider, VARIABLES, conversation_id="conv-1")

        assert result.status == CREATED
        assert result.ok
        assert result.warning is None
        reservation = result.reservation
        assert reservation.status == ReservationStatus.PENDING
        assert reservation.guest_name == "Maria"
        assert reservation.guest_count == 4
        assert reservation.external_event_id == "evt-1"
        assert reservation.external_calendar_id == "cal-1"
        assert reservation.time_zone == "Europe/Berlin"
        assert await store.reservations.get(reservation.id) is not None

        event = provider.created[0]
        assert event["start"] == datetime(2025, 3, 15, 19, 0)
        assert event["duration"] == 60
        assert event["time_zone"] == "Europe/Berlin"
        assert "Maria" in event["summary"]

    async def test_missing_fields(self, ctx, store, creator, account, provider):
        result = await creator.create(ctx, account, provider, {"name": "Maria", "date": "2025-03-15"})
        assert result.status == MISSING_FIELDS
        assert result.missing_fields == ["time", "guestCount"]
        assert provider.created == []
        assert await store.reservations.list() == []

    async def test_invalid_values_reported_as_missing(self, ctx, creator, account, provider):
        result = await creator.create(ctx, account, provider, {**VARIABLES, "name": "M" * 150})
        assert result.status == MISSING_FIELDS
        assert result.missing_fields == ["name"]

    async def test_vertical_default_guest_count(self, ctx, creator, provider):
        account = AccountSettings(account_id="acct-1", vertical="fitness", calendar_id="cal-1")
        variables = {"name": "Jo", "date": "2025-03-15", "time": "10:00"}
        result = await creator.create(ctx, account, provider, variables)
        assert result.status == CREATED
        assert result.reservation.guest_count == 1

    async def test_slot_unavailable_creates_nothing(self, ctx, store, creator, account):
        provider = FakeCalendarProvider([BusyInterval(utc(2025, 3, 15, 18), utc(2025, 3, 15, 19))])

        result = await creator.create(ctx, account, provider, VARIABLES)

        assert result.status == SLOT_UNAVAILABLE
        assert 0 < len(result.suggestions) <= 3
        keys = [(s.date, s.time) for s in result.suggestions]
        assert keys == sorted(keys)
        assert ("2025-03-15", "19:00") not in keys
        assert all(k > ("2025-03-15", "19:00") for k in keys)
        assert provider.created == []
        assert await store.reservations.list() == []

    async def test_availability_error(self, ctx, store, creator, account, provider):
        provider.fail_free_busy = True
        result = await creator.create(ctx, account, provider, VARIABLES)
        assert result.status == AVAILABILITY_ERROR
        assert provider.created == []
        assert await store.reservations.list() == []

    async def test_no_calendar_books_locally(self, ctx, store, creator, provider):
        account = AccountSettings(account_id="acct-1")
        result = await creator.create(ctx, account, provider, VARIABLES)
        assert result.status == CREATED
        assert result.warning == CALENDAR_NOT_CONNECTED
        assert result.reservation.is_local_only
        assert provider.free_busy_calls == 0

    async def test_no_provider_books_locally(self, ctx, creator, account):
        result = await creator.create(ctx, account, None, VARIABLES)
        assert result.status == CREATED
        assert result.warning == CALENDAR_NOT_CONNECTED

    async def test_event_failure_degrades_to_local(self, ctx, store, creator, account, provider):
        provider.fail_create = True
        result = await creator.create(ctx, account, provider, VARIABLES)
        assert result.status == CREATED
        assert result.warning == CALENDAR_ERROR
        assert result.reservation.external_event_id is None
        assert await store.reservations.get(result.reservation.id) is not None

    async def test_event_timeout_books_locally_and_logs_unknown_outcome(
        self, ctx, store, resolver, account, caplog
    ):
        class SlowProvider(FakeCalendarProvider):
            async def create_event(self, *args, **kwargs):
                await asyncio.sleep(1)
                return await super().create_event(*args, **kwargs)

        creator = ReservationCreator(store, resolver, timeout_seconds=0.01)
        with caplog.at_level(logging.ERROR, logger="chatbooking.reservations"):
            result = await creator.create(ctx, account, SlowProvider(), VARIABLES)

        assert result.status == CREATED
        assert result.warning == CALENDAR_ERROR
        assert result.reservation.is_local_only
        assert "outcome unknown" in caplog.text

    async def test_event_creation_invalidates_cache(self, ctx, creator, account, provider):
        await creator.create(ctx, account, provider, VARIABLES)
        await creator.create(ctx, account, provider, {**VARIABLES, "time": "12:00"})
        # The first event changed the calendar, so the second check queries again
        assert provider.free_busy_calls == 2


class TestAtomicity:
    async def test_store_failure_rolls_back_event(self, ctx, resolver, account, provider):
        store = Store(reservations=FailingRepository())
        creator = ReservationCreator(store, resolver, timeout_seconds=5)

        result = await creator.create(ctx, account, provider, VARIABLES)

        assert result.status == CALENDAR_STORE_FAILED
        assert result.reservation is None
        assert provider.deleted == [("evt-1", "cal-1")]

    async def test_store_failure_without_event(self, ctx, resolver, provider):
        store = Store(reservations=FailingRepository())
        creator = ReservationCreator(store, resolver, timeout_seconds=5)
        result = await creator.create(ctx, AccountSettings(account_id="acct-1"), provider, VARIABLES)
        assert result.status == STORE_FAILED
        assert provider.deleted == []

    async def test_failed_rollback_still_reports_failure(self, ctx, resolver, account, provider):
        store = Store(reservations=FailingRepository())
        creator = ReservationCreator(store, resolver, timeout_seconds=5)
        provider.fail_delete = True
        result = await creator.create(ctx, account, provider, VARIABLES)
        assert result.status == CALENDAR_STORE_FAILED

    async def test_same_booking_twice_is_duplicate(self, ctx, store, creator, account, provider):
        first = await creator.create(ctx, account, provider, VARIABLES, conversation_id="conv-1")
        second = await creator.create(ctx, account, provider, VARIABLES, conversation_id="conv-1")

        assert second.status == DUPLICATE
        assert second.reservation.id == first.reservation.id
        assert len(provider.created) == 1
        assert len(await store.reservations.list()) == 1

    async def test_concurrent_duplicate_rolls_back_event(self, ctx, resolver, account, provider):
        store = Store(reservations=RacingRepository())
        creator = ReservationCreator(store, resolver, timeout_seconds=5)

        result = await creator.create(ctx, account, provider, VARIABLES, conversation_id="conv-1")

        assert result.status == DUPLICATE
        assert result.reservation.external_event_id == "evt-other"
        assert provider.deleted == [("evt-1", "cal-1")]


class TestKeys:
    def test_dedup_key_is_stable_and_case_insensitive_on_name(self):
        a = dedup_key("conv-1", VARIABLES)
        b = dedup_key("conv-1", {**VARIABLES, "name": " maria "})
        assert a == b
        assert dedup_key("conv-2", VARIABLES) != a

    def test_reservation_id(self):
        key = dedup_key("conv-1", VARIABLES)
        assert reservation_id_for(key) == f"res_{key[:24]}"


class TestCancel:
    async def test_cancel_deletes_event(self, ctx, store, creator, account, provider):
        created = await creator.create(ctx, account, provider, VARIABLES)
        cancelled = await creator.cancel_reservation(ctx, created.reservation.id, provider)
        assert cancelled.status == ReservationStatus.CANCELLED
        assert provider.deleted == [("evt-1", "cal-1")]
        stored = await store.reservations.get(created.reservation.id)
        assert stored.status == ReservationStatus.CANCELLED

    async def test_cancel_unknown(self, ctx, creator):
        assert await creator.cancel_reservation(ctx, "res_missing") is None

    async def test_cancel_survives_calendar_error(self, ctx, store, creator, account, provider):
        created = await creator.create(ctx, account, provider, VARIABLES)
        provider.fail_delete = True
        cancelled = await creator.cancel_reservation(ctx, created.reservation.id, provider)
        assert cancelled.status == ReservationStatus.CANCELLED
