"""Create reservations: slot check, calendar event, booking record.

The only compensating action lives here: when the calendar event was
created but the booking record could not be written, the event is deleted
again before the failure is reported.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Optional

from pydantic import ValidationError

from chatbooking import variables as fields
from chatbooking.availability import AvailabilityResolver, SlotSuggestion
from chatbooking.calendar_providers.base import CalendarProvider, CreatedEvent
from chatbooking.config import settings
from chatbooking.context import TurnContext, redact_pii
from chatbooking.models import AccountSettings, Reservation, ReservationStatus
from chatbooking.models.conversation import utcnow
from chatbooking.repository import Store

# Result statuses
CREATED = "created"
MISSING_FIELDS = "missing_fields"
SLOT_UNAVAILABLE = "slot_unavailable"
AVAILABILITY_ERROR = "availability_error"
CALENDAR_STORE_FAILED = "calendar_store_failed"
STORE_FAILED = "store_failed"
DUPLICATE = "duplicate"

# Warnings attached to a successful, degraded booking
CALENDAR_ERROR = "calendar_error"
CALENDAR_NOT_CONNECTED = "calendar_not_connected"

# Reservation attribute → variable name
_FIELD_FOR_ATTR = {
    "guest_name": fields.NAME,
    "date": fields.DATE,
    "time": fields.TIME,
    "guest_count": fields.GUEST_COUNT,
    "phone": fields.PHONE,
    "email": fields.EMAIL,
    "special_requests": fields.SPECIAL_REQUESTS,
}


@dataclass
class ReservationResult:
    status: str
    reservation: Optional[Reservation] = None
    suggestions: list[SlotSuggestion] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    warning: Optional[str] = None
    event: Optional[CreatedEvent] = None

    @property
    def ok(self) -> bool:
        return self.status == CREATED


def dedup_key(conversation_id: Optional[str], variables: dict[str, Any]) -> str:
    """Stable key for one conversation's completed booking data."""
    parts = [
        conversation_id or "",
        str(variables.get(fields.NAME, "")).strip().lower(),
        str(variables.get(fields.DATE, "")),
        str(variables.get(fields.TIME, "")),
        str(variables.get(fields.GUEST_COUNT, "")),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def reservation_id_for(key: str) -> str:
    return f"res_{key[:24]}"


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ReservationCreator:
    """Books a reservation once the conversation has every required field."""

    def __init__(
        self,
        store: Store,
        resolver: AvailabilityResolver,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._timeout = timeout_seconds or settings.calendar_timeout_seconds

    def _build(
        self,
        account: AccountSettings,
        variables: dict[str, Any],
        conversation_id: Optional[str],
        contact_id: Optional[str],
    ) -> Reservation:
        key = dedup_key(conversation_id, variables)
        return Reservation(
            id=reservation_id_for(key),
            account_id=account.account_id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            guest_name=str(variables[fields.NAME]).strip(),
            date=variables[fields.DATE],
            time=variables[fields.TIME],
            guest_count=fields.parse_guest_count(variables.get(fields.GUEST_COUNT)) or 1,
            phone=_optional_text(variables.get(fields.PHONE)),
            email=_optional_text(variables.get(fields.EMAIL)),
            special_requests=_optional_text(variables.get(fields.SPECIAL_REQUESTS)),
            time_zone=account.calendar.time_zone,
            dedup_key=key,
        )

    async def create(
        self,
        ctx: TurnContext,
        account: AccountSettings,
        provider: Optional[CalendarProvider],
        variables: dict[str, Any],
        conversation_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> ReservationResult:
        log = ctx.logger("chatbooking.reservations")
        values = account.requirements.apply_defaults(variables)
        # A booking record cannot exist without name, date and time
        required = list(
            dict.fromkeys(
                [fields.NAME, fields.DATE, fields.TIME, *account.requirements.required_fields]
            )
        )
        missing = fields.missing_fields(values, required)
        if missing:
            log.info("Reservation not attempted, missing fields: %s", ", ".join(missing))
            return ReservationResult(status=MISSING_FIELDS, missing_fields=missing)

        try:
            reservation = self._build(account, values, conversation_id, contact_id)
        except ValidationError as e:
            invalid = [
                _FIELD_FOR_ATTR.get(str(err["loc"][0]), str(err["loc"][0])) for err in e.errors()
            ]
            log.info("Reservation data rejected: %s", ", ".join(invalid))
            return ReservationResult(status=MISSING_FIELDS, missing_fields=invalid)

        existing = await self._store.reservations.get(reservation.id)
        if existing is not None:
            log.info("Reservation %s already exists for this booking", existing.id)
            return ReservationResult(status=DUPLICATE, reservation=existing)

        if provider is None or not account.calendar_connected:
            log.info("No calendar connected, booking locally only")
            return await self._persist(ctx, reservation, None, CALENDAR_NOT_CONNECTED)

        calendar_id = account.calendar_id or settings.google_calendar_id
        availability = await self._resolver.check(
            ctx,
            provider,
            calendar_id,
            reservation.date,
            reservation.time,
            account.calendar,
        )
        if availability.failed:
            return ReservationResult(status=AVAILABILITY_ERROR)
        if not availability.available:
            return ReservationResult(
                status=SLOT_UNAVAILABLE, suggestions=list(availability.suggestions)
            )

        event: Optional[CreatedEvent] = None
        warning: Optional[str] = None
        try:
            event = await asyncio.wait_for(
                provider.create_event(
                    summary=self._summary(reservation),
                    description=self._description(reservation),
                    start=datetime.combine(
                        date.fromisoformat(reservation.date),
                        time.fromisoformat(reservation.time),
                    ),
                    duration_minutes=account.calendar.slot_duration_minutes,
                    time_zone=account.calendar.time_zone,
                    calendar_id=calendar_id,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            # The insert may still complete in its worker thread
            log.error(
                "Calendar event creation timed out after %ss, outcome unknown; "
                "the event may still appear on calendar %s",
                self._timeout,
                calendar_id,
            )
            warning = CALENDAR_ERROR
        except Exception as e:
            # Degrade to a local-only booking
            log.warning("Calendar event creation failed, booking locally: %s", e)
            warning = CALENDAR_ERROR
        else:
            reservation = reservation.model_copy(
                update={
                    "external_event_id": event.id,
                    "external_calendar_id": event.calendar_id or calendar_id,
                    "time_zone": event.time_zone or reservation.time_zone,
                }
            )
            self._resolver.cache.invalidate_account(account.account_id, calendar_id)

        return await self._persist(ctx, reservation, provider if event else None, warning, event)

    async def _persist(
        self,
        ctx: TurnContext,
        reservation: Reservation,
        provider: Optional[CalendarProvider],
        warning: Optional[str],
        event: Optional[CreatedEvent] = None,
    ) -> ReservationResult:
        log = ctx.logger("chatbooking.reservations")
        try:
            stored, inserted = await self._store.reservations.insert_if_absent(reservation)
        except Exception as e:
            log.error("Storing reservation %s failed: %s", reservation.id, e)
            if event is not None and provider is not None:
                await self._rollback(ctx, provider, event)
                return ReservationResult(status=CALENDAR_STORE_FAILED)
            return ReservationResult(status=STORE_FAILED)

        if not inserted:
            log.info("Concurrent booking detected, keeping reservation %s", stored.id)
            if event is not None and provider is not None:
                await self._rollback(ctx, provider, event)
            return ReservationResult(status=DUPLICATE, reservation=stored)

        log.info(
            "Reservation %s created for %s on %s %s (event=%s, warning=%s)",
            stored.id,
            redact_pii(stored.guest_name),
            stored.date,
            stored.time,
            stored.external_event_id,
            warning,
        )
        return ReservationResult(status=CREATED, reservation=stored, warning=warning, event=event)

    async def _rollback(self, ctx: TurnContext, provider: CalendarProvider, event: CreatedEvent) -> None:
        log = ctx.logger("chatbooking.reservations")
        try:
            await asyncio.wait_for(
                provider.delete_event(event.id, event.calendar_id), timeout=self._timeout
            )
            log.info("Rolled back calendar event %s", event.id)
        except Exception as e:
            log.error("Rollback of calendar event %s failed, event is orphaned: %s", event.id, e)

    async def cancel_reservation(
        self,
        ctx: TurnContext,
        reservation_id: str,
        provider: Optional[CalendarProvider] = None,
    ) -> Optional[Reservation]:
        """Mark a reservation cancelled and delete its calendar event best-effort."""
        log = ctx.logger("chatbooking.reservations")
        reservation = await self._store.reservations.get(reservation_id)
        if reservation is None:
            return None
        cancelled = reservation.model_copy(
            update={"status": ReservationStatus.CANCELLED, "updated_at": utcnow()}
        )
        await self._store.reservations.upsert(cancelled)

        if provider is not None and reservation.external_event_id:
            try:
                await asyncio.wait_for(
                    provider.delete_event(
                        reservation.external_event_id, reservation.external_calendar_id or ""
                    ),
                    timeout=self._timeout,
                )
            except Exception as e:
                log.warning("Could not delete event for cancelled reservation %s: %s", reservation_id, e)
            self._resolver.cache.invalidate_account(reservation.account_id)
        log.info("Reservation %s cancelled", reservation_id)
        return cancelled

    @staticmethod
    def _summary(reservation: Reservation) -> str:
        return f"Reservierung: {reservation.guest_name} ({reservation.guest_count} Pers.)"

    @staticmethod
    def _description(reservation: Reservation) -> str:
        lines = [
            f"Name: {reservation.guest_name}",
            f"Personen: {reservation.guest_count}",
        ]
        if reservation.phone:
            lines.append(f"Telefon: {reservation.phone}")
        if reservation.email:
            lines.append(f"E-Mail: {reservation.email}")
        if reservation.special_requests:
            lines.append(f"Wünsche: {reservation.special_requests}")
        if reservation.conversation_id:
            lines.append(f"Konversation: {reservation.conversation_id}")
        return "\n".join(lines)
