"""End-to-end tests for inbound message handling."""

import asyncio

import pytest

from chatbooking.availability import SlotSuggestion
from chatbooking.calendar_providers.base import BusyInterval
from chatbooking.config import settings
from chatbooking.flows.schema import FlowGraph
from chatbooking.flows.templates import build_reservation_flow
from chatbooking.interpreter import structured_payload
from chatbooking.models import ConversationStatus, MessageDirection, ReservationStatus, ReviewStatus
from chatbooking.repository import InMemoryRepository, Store
from chatbooking.reviews import ReviewDispatcher
from chatbooking.service import (
    InboundEvent,
    MessageService,
    TurnResponse,
    conversation_id_for,
    format_slot_suggestions,
)

from tests.conftest import FakeCalendarProvider, utc

CONV_ID = conversation_id_for("acct-1", "ig-1")


def _event(text=None, payload=None, sender="ig-1"):
    return InboundEvent(account_id="acct-1", sender_id=sender, text=text, button_payload=payload)


async def _seed(store, account, *flows):
    await store.accounts.upsert(account)
    for flow in flows:
        await store.flows.upsert(flow)


@pytest.fixture
def make_service(store, interpreter, creator, channel, provider):
    def _make(store=store, provider=provider):
        reviews = ReviewDispatcher(store, channel, interpreter, delay_hours=3)
        return MessageService(
            store,
            interpreter,
            creator,
            reviews=reviews,
            provider_factory=lambda account: provider,
        )

    return _make


async def _walk(service, *texts):
    response = None
    for text in texts:
        response = await service.handle(_event(text))
    return response


class TestBookingConversation:
    async def test_full_booking(self, store, account, booking_flow, review_flow, make_service, provider):
        await _seed(store, account, booking_flow, review_flow)
        service = make_service()

        first = await service.handle(_event("Ich möchte reservieren"))
        assert first.next_node_id == "start"
        assert first.quick_replies[0].label == "Ja, reservieren"
        assert first.conversation_id == CONV_ID

        assert (await service.handle(_event("Ja, reservieren"))).next_node_id == "ask-date"
        assert (await service.handle(_event("15.03.2025"))).next_node_id == "ask-time"
        assert (await service.handle(_event("19 Uhr"))).next_node_id == "ask-guests"
        assert (await service.handle(_event("4"))).next_node_id == "ask-name"
        final = await service.handle(_event("Maria"))

        assert final.next_node_id == "confirm"
        assert final.updated_variables == {
            "date": "2025-03-15",
            "time": "19:00",
            "guestCount": 4,
            "name": "Maria",
        }
        assert "Danke Maria!" in final.bot_text
        assert final.reservation_id is not None

        reservation = await store.reservations.get(final.reservation_id)
        assert reservation.status == ReservationStatus.PENDING
        assert reservation.guest_name == "Maria"
        assert reservation.guest_count == 4
        assert reservation.date == "2025-03-15"
        assert reservation.time == "19:00"
        assert reservation.conversation_id == CONV_ID
        assert reservation.contact_id is not None
        assert reservation.external_event_id == "evt-1"
        assert len(provider.created) == 1

        conversation = await store.conversations.get(CONV_ID)
        assert conversation.status == ConversationStatus.CLOSED

        messages = await store.messages.list(conversation_id=CONV_ID)
        assert len(messages) == 12
        assert sum(m.direction == MessageDirection.INBOUND for m in messages) == 6

        contact = (await store.contacts.list(sender_id="ig-1"))[0]
        assert contact.display_name == "Maria"
        assert conversation.contact_id == contact.id

    async def test_button_payload_advances(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        service = make_service()
        first = await service.handle(_event("reservieren"))
        response = await service.handle(_event(payload=first.quick_replies[0].payload))
        assert response.next_node_id == "ask-date"

    async def test_busy_slot_offers_suggestions(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        busy = FakeCalendarProvider([BusyInterval(utc(2025, 3, 15, 18), utc(2025, 3, 15, 19))])
        service = make_service(provider=busy)

        response = await _walk(
            service, "reservieren", "Ja, reservieren", "15.03.2025", "19 Uhr", "4", "Maria"
        )

        assert response.reservation_id is None
        assert response.bot_text.startswith(settings.slot_unavailable_message)
        assert "Hier sind die nächsten freien Zeiten:" in response.bot_text
        assert "• 17.03.2025 07:00" in response.bot_text
        assert "15.03.2025 19:00" not in response.bot_text
        assert response.next_node_id == "ask-time"
        assert response.updated_variables["time"] == "19:00"
        assert busy.created == []
        assert await store.reservations.list() == []

        conversation = await store.conversations.get(CONV_ID)
        assert conversation.status == ConversationStatus.ACTIVE

        # Pick another time; it replaces the old one and the flow walks on again
        response = await service.handle(_event("12 Uhr"))
        assert response.updated_variables["time"] == "12:00"
        assert response.updated_variables["name"] == "Maria"
        response = await _walk(service, "4", "Maria")
        assert response.next_node_id == "confirm"
        assert response.reservation_id is not None
        reservation = await store.reservations.get(response.reservation_id)
        assert reservation.time == "12:00"

    async def test_availability_error_asks_again(self, store, account, booking_flow, make_service, provider):
        await _seed(store, account, booking_flow)
        provider.fail_free_busy = True
        service = make_service()

        response = await _walk(
            service, "reservieren", "Ja, reservieren", "15.03.2025", "19 Uhr", "4", "Maria"
        )

        assert response.bot_text == settings.availability_error_message
        assert response.next_node_id == "ask-time"
        assert await store.reservations.list() == []

    async def test_calendar_failure_books_locally_with_warning(
        self, store, account, booking_flow, make_service, provider
    ):
        await _seed(store, account, booking_flow)
        provider.fail_create = True
        service = make_service()

        response = await _walk(
            service, "reservieren", "Ja, reservieren", "15.03.2025", "19 Uhr", "4", "Maria"
        )

        assert response.reservation_id is not None
        assert response.bot_text.endswith(settings.calendar_warning_message)
        reservation = await store.reservations.get(response.reservation_id)
        assert reservation.is_local_only

    async def test_flow_ending_on_free_text_books_with_last_answer(
        self, store, account, make_service, provider
    ):
        def ask(node_id, field):
            return {"id": node_id, "text": f"{field}?", "inputMode": "FreeText", "collectsField": field}

        flow = FlowGraph.model_validate(
            {
                "id": "wunsch-booking",
                "accountId": "acct-1",
                "status": "Active",
                "nodes": [
                    ask("d", "date"),
                    ask("t", "time"),
                    ask("g", "guestCount"),
                    ask("n", "name"),
                    ask("w", "specialRequests"),
                ],
                "edges": [
                    {"source": "d", "target": "t"},
                    {"source": "t", "target": "g"},
                    {"source": "g", "target": "n"},
                    {"source": "n", "target": "w"},
                ],
                "triggers": [{"id": "t-1", "keywords": ["reservieren"], "startNodeId": "d"}],
            }
        )
        await _seed(store, account, flow)
        service = make_service()

        waiting = await _walk(service, "reservieren", "15.03.2025", "19 Uhr", "4", "Maria")
        assert waiting.next_node_id == "w"
        assert waiting.reservation_id is None

        final = await service.handle(_event("Fensterplatz bitte"))

        assert final.reservation_id is not None
        assert final.bot_text == settings.text_received_message
        assert final.updated_variables["specialRequests"] == "Fensterplatz bitte"
        reservation = await store.reservations.get(final.reservation_id)
        assert reservation.special_requests == "Fensterplatz bitte"
        assert reservation.guest_name == "Maria"
        assert len(provider.created) == 1
        conversation = await store.conversations.get(CONV_ID)
        assert conversation.status == ConversationStatus.CLOSED

    async def test_missing_field_at_end_is_asked_again(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        service = make_service()

        response = await _walk(
            service, "reservieren", "Ja, reservieren", "15.03.2025", "19 Uhr", "viele", "Maria"
        )

        assert response.next_node_id == "ask-guests"
        assert response.reservation_id is None
        conversation = await store.conversations.get(CONV_ID)
        assert conversation.status == ConversationStatus.ACTIVE

        response = await _walk(service, "3", "Maria")
        assert response.reservation_id is not None


class TestFallbacks:
    async def test_unknown_sender_without_match_stores_nothing(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        service = make_service()

        response = await service.handle(_event("Hallo"))

        assert response.bot_text == settings.not_understood_with_keywords.format(
            keywords="reservieren, tisch, reservierung, buchen"
        )
        assert await store.conversations.get(CONV_ID) is None
        assert await store.messages.list() == []
        assert await store.contacts.list() == []

    async def test_no_flows_plain_not_understood(self, store, account, make_service):
        await _seed(store, account)
        response = await make_service().handle(_event("Hallo"))
        assert response.bot_text == settings.not_understood_message

    async def test_unrelated_text_reprompts_current_node(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        service = make_service()
        first = await service.handle(_event("reservieren"))

        response = await service.handle(_event("Was kostet das?"))

        assert response.next_node_id == "start"
        assert response.bot_text == first.bot_text

    async def test_closed_conversation_can_start_again(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        service = make_service()
        await _walk(service, "reservieren", "Ja, reservieren", "15.03.2025", "19 Uhr", "4", "Maria")

        response = await service.handle(_event("nochmal reservieren"))

        assert response.next_node_id == "start"
        assert response.updated_variables == {}

    async def test_button_on_free_text_node_reprompts(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        service = make_service()
        await _walk(service, "reservieren")
        await service.handle(_event("Ja, reservieren"))

        response = await service.handle(_event(payload=structured_payload("gastro-booking", "ask-date")))

        # ask-date is a free-text node, so the button cannot apply; no trigger matches either
        assert response.next_node_id == "ask-date"

    async def test_stale_structured_payload_does_not_restart_flow(
        self, store, account, make_service
    ):
        # The flow id contains the trigger keyword "reservieren"
        flow = build_reservation_flow("gastro", "Trattoria Roma", flow_id="tisch-reservieren")
        await _seed(store, account, flow)
        service = make_service()
        await _walk(service, "reservieren", "Ja, reservieren", "15.03.2025")

        response = await service.handle(
            _event(payload=structured_payload("tisch-reservieren", "ask-date"))
        )

        assert response.next_node_id == "ask-time"
        assert response.updated_variables == {"date": "2025-03-15"}

    async def test_failed_commit_writes_nothing(self, account, booking_flow, interpreter, creator, provider):
        class BrokenConversations(InMemoryRepository):
            async def upsert(self, value):
                raise RuntimeError("write failed")

        store = Store(conversations=BrokenConversations())
        await _seed(store, account, booking_flow)
        service = MessageService(store, interpreter, creator, provider_factory=lambda a: provider)

        response = await service.handle(_event("reservieren"))

        assert isinstance(response, TurnResponse)
        assert response.bot_text == settings.fallback_message
        assert await store.messages.list() == []

    async def test_turns_of_one_conversation_are_serialized(self, store, account, booking_flow, make_service):
        await _seed(store, account, booking_flow)
        service = make_service()

        await asyncio.gather(
            service.handle(_event("reservieren")), service.handle(_event("reservieren"))
        )

        assert len(await store.messages.list(conversation_id=CONV_ID)) == 4
        assert len(service.locks) == 0


class TestReviewResponses:
    async def test_rating_updates_review_request(
        self, ctx, store, account, booking_flow, review_flow, make_service, channel
    ):
        await _seed(store, account, booking_flow, review_flow)
        service = make_service()
        final = await _walk(
            service, "reservieren", "Ja, reservieren", "15.03.2025", "19 Uhr", "4", "Maria"
        )
        reservation = await store.reservations.get(final.reservation_id)

        dispatcher = ReviewDispatcher(store, channel, delay_hours=3)
        await dispatcher.dispatch(ctx, reservation)
        payload = channel.sent[-1][1].quick_replies[3].payload

        response = await service.handle(_event(payload=payload))

        assert response.next_node_id == "review-feedback"
        request = await store.review_requests.get(f"rr_{reservation.id}")
        assert request.status == ReviewStatus.RATED
        assert request.rating == 2

        await service.handle(_event("Es war zu laut"))
        request = await store.review_requests.get(f"rr_{reservation.id}")
        assert request.status == ReviewStatus.COMPLETED
        assert request.feedback == "Es war zu laut"


class TestHelpers:
    def test_conversation_id_is_stable(self):
        assert conversation_id_for("a", "b") == conversation_id_for("a", "b")
        assert conversation_id_for("a", "b") != conversation_id_for("a", "c")

    def test_format_suggestions(self):
        text = format_slot_suggestions([SlotSuggestion("2025-03-17", "07:00")])
        assert "• 17.03.2025 07:00" in text
        assert format_slot_suggestions([]) == "Bitte nenne eine andere Uhrzeit oder ein anderes Datum."

    def test_event_accepts_camel_case(self):
        event = InboundEvent.model_validate(
            {"accountId": "a", "senderId": "s", "buttonPayload": "p", "text": "t"}
        )
        assert event.button_payload == "p"
        dumped = TurnResponse(bot_text="x").model_dump(by_alias=True)
        assert "botText" in dumped and "nextNodeId" in dumped
