"""Inbound message handling: one chat event in, one bot reply out.

``MessageService.handle`` runs a full conversation turn: it continues the
current flow with the button or text the guest sent, falls back to trigger
matching, books the reservation once a booking flow has everything it needs,
and commits the turn.  Turns of one conversation are serialized; a turn that
fails midway writes nothing and answers with the generic fallback text.
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from chatbooking import variables as fields
from chatbooking.availability import SlotSuggestion
from chatbooking.calendar_providers.base import CalendarProvider
from chatbooking.calendar_providers.google import GoogleCalendarProvider
from chatbooking.config import settings
from chatbooking.context import TurnContext, redact_pii
from chatbooking.contacts import find_or_create_contact, touch_contact
from chatbooking.flows.matcher import list_trigger_keywords, match_trigger
from chatbooking.flows.schema import FlowGraph
from chatbooking.interpreter import (
    ConversationInterpreter,
    TurnOutcome,
    parse_structured_payload,
)
from chatbooking.locks import KeyedLocks
from chatbooking.models import (
    AccountSettings,
    Contact,
    Conversation,
    ConversationStatus,
    MessageDirection,
    MessageRecord,
    OutboundMessage,
    OutboundQuickReply,
)
from chatbooking.models.conversation import utcnow
from chatbooking.repository import Store, contact_key
from chatbooking.reservations import (
    AVAILABILITY_ERROR,
    CALENDAR_ERROR,
    CALENDAR_STORE_FAILED,
    CREATED,
    DUPLICATE,
    MISSING_FIELDS,
    SLOT_UNAVAILABLE,
    STORE_FAILED,
    ReservationCreator,
)
from chatbooking.reviews import ReviewDispatcher

logger = logging.getLogger("chatbooking.service")

ProviderFactory = Callable[[AccountSettings], Optional[CalendarProvider]]

_EVENT_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InboundEvent(BaseModel):
    """A message or button press from a guest, as delivered by the channel."""

    model_config = _EVENT_CONFIG

    account_id: str
    sender_id: str
    conversation_id: Optional[str] = None
    text: Optional[str] = None
    button_payload: Optional[str] = None
    sender_name: Optional[str] = None


class TurnResponse(BaseModel):
    model_config = _EVENT_CONFIG

    bot_text: str
    quick_replies: list[OutboundQuickReply] = []
    image_url: Optional[str] = None
    next_node_id: Optional[str] = None
    updated_variables: dict[str, Any] = {}
    reservation_id: Optional[str] = None
    conversation_id: Optional[str] = None


def conversation_id_for(account_id: str, sender_id: str) -> str:
    """One conversation per (account, sender) unless the channel supplies its own id."""
    digest = hashlib.sha256(f"{account_id}:{sender_id}".encode("utf-8")).hexdigest()
    return f"conv_{digest[:24]}"


def default_provider_factory(account: AccountSettings) -> Optional[CalendarProvider]:
    """Google Calendar for accounts with a calendar id, preferring the account's own token."""
    if not account.calendar_connected:
        return None
    if account.calendar_access_token:
        return GoogleCalendarProvider.from_access_token(account.calendar_access_token)
    path = settings.google_service_account_json
    if path and os.path.isfile(path):
        return GoogleCalendarProvider(service_account_path=path)
    return None


def format_slot_suggestions(suggestions: list[SlotSuggestion]) -> str:
    if not suggestions:
        return "Bitte nenne eine andere Uhrzeit oder ein anderes Datum."
    lines = [f"• {fields.format_display_date(s.date)} {s.time}" for s in suggestions]
    return (
        "Hier sind die nächsten freien Zeiten:\n"
        + "\n".join(lines)
        + "\n\nBitte antworte mit einer Uhrzeit oder einem neuen Datum."
    )


class MessageService:
    """Runs conversation turns against the store."""

    def __init__(
        self,
        store: Store,
        interpreter: ConversationInterpreter,
        creator: ReservationCreator,
        reviews: ReviewDispatcher | None = None,
        provider_factory: ProviderFactory = default_provider_factory,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._store = store
        self._interpreter = interpreter
        self._creator = creator
        self._reviews = reviews
        self._provider_factory = provider_factory
        self._locks = locks or KeyedLocks()

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    async def handle(self, event: InboundEvent, ctx: TurnContext | None = None) -> TurnResponse:
        """Process one inbound event and return the reply for the guest."""
        conversation_id = event.conversation_id or conversation_id_for(
            event.account_id, event.sender_id
        )
        ctx = ctx or TurnContext(account_id=event.account_id, correlation_id=conversation_id)
        log = ctx.logger("chatbooking.service")

        async with self._locks.hold(conversation_id):
            try:
                return await self._turn(ctx, event, conversation_id)
            except Exception:
                log.exception("Turn failed, nothing was committed")
                return TurnResponse(
                    bot_text=settings.fallback_message, conversation_id=conversation_id
                )

    # ── Turn ──────────────────────────────────────────────────

    async def _account(self, account_id: str) -> AccountSettings:
        account = await self._store.accounts.get(account_id)
        return account or AccountSettings(account_id=account_id)

    async def _turn(self, ctx: TurnContext, event: InboundEvent, conversation_id: str) -> TurnResponse:
        log = ctx.logger("chatbooking.service")
        account = await self._account(event.account_id)
        today = datetime.now(account.calendar.zone).date()
        text = (event.text or "").strip()
        payload = (event.button_payload or "").strip()

        existing = await self._store.conversations.get(conversation_id)
        conversation = existing or Conversation(
            id=conversation_id, account_id=event.account_id, sender_id=event.sender_id
        )
        contact = await self._store.contacts.get(contact_key(event.account_id, event.sender_id))
        flows = await self._store.active_flows(event.account_id)

        flow: Optional[FlowGraph] = None
        if conversation.current_flow_id:
            flow = await self._store.flows.get(conversation.current_flow_id)
        in_flow = flow is not None and conversation.status == ConversationStatus.ACTIVE

        outcome: Optional[TurnOutcome] = None
        if payload and in_flow:
            outcome = self._interpreter.press_button(ctx, conversation, flow, payload)
        if (outcome is None or not outcome.consumed) and text and in_flow:
            outcome = self._interpreter.submit_text(ctx, conversation, flow, text, today=today)

        if outcome is None or not outcome.consumed:
            # Stale button payloads must not restart a flow by substring
            trigger_text = text or ("" if parse_structured_payload(payload) else payload)
            match = match_trigger(trigger_text, flows)
            if match is not None:
                log.info("Trigger %s matched, starting flow %s", match.trigger_id, match.flow_id)
                fresh = conversation.model_copy(
                    update={"review_request_id": None, "status": ConversationStatus.ACTIVE}
                )
                flow = match.flow
                outcome = self._interpreter.enter(
                    ctx, fresh, flow, match.start_node_id, variables={}
                )

        if (outcome is None or not outcome.consumed) and in_flow:
            node = flow.node(conversation.current_node_id)
            if node is not None:
                outcome = TurnOutcome(
                    conversation=conversation,
                    message=self._interpreter.render(flow, node, conversation.variables),
                )

        if outcome is None or not outcome.consumed:
            message = OutboundMessage(
                text=self._not_understood(flows), node_id=conversation.current_node_id
            )
            if existing is None:
                log.info("No flow matched for a new sender, nothing stored")
                return self._response(conversation, message, None)
            outcome = TurnOutcome(conversation=conversation, message=message, consumed=False)

        reservation_id: Optional[str] = None
        if outcome.moved and flow is not None:
            outcome, reservation_id = await self._maybe_book(
                ctx, account, flow, outcome, contact.id if contact else None
            )

        committed = await self._commit(ctx, event, existing, outcome, text or payload)
        await self._after_commit(ctx, event, committed, outcome, contact)
        return self._response(committed, outcome.message, reservation_id)

    def _not_understood(self, flows: list[FlowGraph]) -> str:
        keywords = list_trigger_keywords(flows)
        if keywords:
            return settings.not_understood_with_keywords.format(keywords=", ".join(keywords))
        return settings.not_understood_message

    @staticmethod
    def _response(
        conversation: Conversation,
        message: Optional[OutboundMessage],
        reservation_id: Optional[str],
    ) -> TurnResponse:
        message = message or OutboundMessage(text=settings.fallback_message)
        return TurnResponse(
            bot_text=message.text,
            quick_replies=list(message.quick_replies),
            image_url=message.image_url,
            next_node_id=conversation.current_node_id,
            updated_variables=dict(conversation.variables),
            reservation_id=reservation_id,
            conversation_id=conversation.id,
        )

    # ── Booking ───────────────────────────────────────────────

    async def _maybe_book(
        self,
        ctx: TurnContext,
        account: AccountSettings,
        flow: FlowGraph,
        outcome: TurnOutcome,
        contact_id: Optional[str],
    ) -> tuple[TurnOutcome, Optional[str]]:
        """Create the reservation when the flow reached a step past data collection."""
        log = ctx.logger("chatbooking.service")
        requirements = account.requirements
        if not set(requirements.required_fields) & flow.collected_fields():
            return outcome, None

        conversation = outcome.conversation
        node = flow.node(outcome.node_id)
        if node is None:
            return outcome, None
        if node.collects_field and conversation.status != ConversationStatus.CLOSED:
            # Still waiting for this answer
            return outcome, None

        missing = requirements.missing(conversation.variables)
        if missing:
            if flow.is_terminal(node.id):
                log.info("Flow ended with missing fields: %s", ", ".join(missing))
                return self._reask(ctx, flow, outcome, missing), None
            return outcome, None

        provider = self._provider(ctx, account)
        result = await self._creator.create(
            ctx,
            account,
            provider,
            conversation.variables,
            conversation_id=conversation.id,
            contact_id=contact_id,
        )

        if result.status in (CREATED, DUPLICATE):
            message = outcome.message
            if result.warning == CALENDAR_ERROR and message is not None:
                message = message.model_copy(
                    update={"text": f"{message.text}\n\n{settings.calendar_warning_message}"}
                )
            reservation_id = result.reservation.id if result.reservation else None
            return (
                TurnOutcome(
                    conversation=conversation,
                    message=message,
                    moved=True,
                    collected=outcome.collected,
                ),
                reservation_id,
            )

        if result.status == MISSING_FIELDS:
            return self._reask(ctx, flow, outcome, result.missing_fields), None

        if result.status == SLOT_UNAVAILABLE:
            text = (
                f"{settings.slot_unavailable_message}\n\n"
                f"{format_slot_suggestions(result.suggestions)}"
            )
        elif result.status == AVAILABILITY_ERROR:
            text = settings.availability_error_message
        elif result.status in (CALENDAR_STORE_FAILED, STORE_FAILED):
            text = settings.store_error_message
        else:
            raise ValueError(f"Unexpected reservation status {result.status!r}")

        log.info("Booking not completed (%s), asking for a new time", result.status)
        return self._back_to_time(flow, outcome, text), None

    def _provider(self, ctx: TurnContext, account: AccountSettings) -> Optional[CalendarProvider]:
        try:
            return self._provider_factory(account)
        except Exception as e:
            ctx.logger("chatbooking.service").warning(
                "Calendar provider unavailable, booking locally: %s", e
            )
            return None

    def _back_to_time(self, flow: FlowGraph, outcome: TurnOutcome, text: str) -> TurnOutcome:
        # The old time stays until the guest names a new one
        time_node = flow.collector_for(fields.TIME) or outcome.node_id
        conversation = outcome.conversation.model_copy(
            update={
                "current_node_id": time_node,
                "status": ConversationStatus.ACTIVE,
            }
        )
        return TurnOutcome(
            conversation=conversation,
            message=OutboundMessage(text=text, node_id=time_node),
            moved=True,
            collected=outcome.collected,
        )

    def _reask(
        self,
        ctx: TurnContext,
        flow: FlowGraph,
        outcome: TurnOutcome,
        missing: list[str],
    ) -> TurnOutcome:
        for name in missing:
            node_id = flow.collector_for(name)
            if node_id:
                ctx.logger("chatbooking.service").info("Re-asking %s at node %s", name, node_id)
                return self._interpreter.enter(ctx, outcome.conversation, flow, node_id)
        return outcome

    # ── Commit ────────────────────────────────────────────────

    async def _commit(
        self,
        ctx: TurnContext,
        event: InboundEvent,
        existing: Optional[Conversation],
        outcome: TurnOutcome,
        inbound_text: str,
    ) -> Conversation:
        """Write the message records, then the conversation.

        If the conversation write fails the message records are removed again
        so the turn leaves no trace.
        """
        now = utcnow()
        conversation = outcome.conversation.model_copy(update={"last_message_at": now})
        base = f"msg_{conversation.id}_{int(now.timestamp())}_{secrets.token_hex(4)}"
        inbound = MessageRecord(
            id=f"{base}_in",
            conversation_id=conversation.id,
            account_id=conversation.account_id,
            direction=MessageDirection.INBOUND,
            text=event.text or "",
            payload=event.button_payload,
            node_id=existing.current_node_id if existing else None,
        )
        records = [inbound]
        if outcome.message is not None:
            records.append(
                MessageRecord(
                    id=f"{base}_out",
                    conversation_id=conversation.id,
                    account_id=conversation.account_id,
                    direction=MessageDirection.OUTBOUND,
                    text=outcome.message.text,
                    node_id=outcome.message.node_id,
                )
            )

        written: list[str] = []
        try:
            for record in records:
                await self._store.messages.upsert(record)
                written.append(record.id)
            await self._store.conversations.upsert(conversation)
        except Exception:
            for record_id in written:
                await self._store.messages.delete(record_id)
            raise

        ctx.logger("chatbooking.service").info(
            "Turn committed: %r -> node=%s status=%s",
            redact_pii(inbound_text),
            conversation.current_node_id,
            conversation.status.value,
        )
        return conversation

    async def _after_commit(
        self,
        ctx: TurnContext,
        event: InboundEvent,
        conversation: Conversation,
        outcome: TurnOutcome,
        contact: Optional[Contact],
    ) -> None:
        log = ctx.logger("chatbooking.service")
        if self._reviews is not None and outcome.collected:
            try:
                await self._reviews.record_response(ctx, conversation, outcome.collected)
            except Exception as e:
                log.warning("Could not update review request: %s", e)

        try:
            if contact is None:
                contact = await find_or_create_contact(
                    self._store, event.account_id, event.sender_id, event.sender_name
                )
            name = conversation.variables.get(fields.NAME) or event.sender_name
            await touch_contact(self._store, contact, name)
            if conversation.contact_id != contact.id:
                await self._store.conversations.upsert(
                    conversation.model_copy(update={"contact_id": contact.id})
                )
        except Exception as e:
            log.warning("Could not update contact: %s", e)
