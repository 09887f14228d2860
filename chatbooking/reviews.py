"""Post-visit review requests.

A periodic sweep finds reservations whose visit is over, enters the review
flow for the guest's conversation and sends its first message.  The review
request record (one per reservation) gates re-sending, so sweeps can run
as often as the scheduler likes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from chatbooking import variables as fields
from chatbooking.availability import zoned_to_utc
from chatbooking.channels.base import MessageChannel
from chatbooking.config import settings
from chatbooking.context import TurnContext
from chatbooking.flows.schema import FlowGraph
from chatbooking.flows.templates import load_review_flow, review_entry_node
from chatbooking.interpreter import ConversationInterpreter
from chatbooking.locks import KeyedLocks
from chatbooking.models import (
    AccountSettings,
    Conversation,
    MessageDirection,
    MessageRecord,
    Reservation,
    ReservationStatus,
    ReviewRequest,
    ReviewStatus,
)
from chatbooking.models.conversation import utcnow
from chatbooking.models.reservation import FINAL_REVIEW_STATUSES
from chatbooking.repository import Store

logger = logging.getLogger("chatbooking.reviews")

ELIGIBLE_STATUSES = frozenset(
    {ReservationStatus.PENDING, ReservationStatus.CONFIRMED, ReservationStatus.COMPLETED}
)

# dispatch() outcomes
SENT = "sent"
ALREADY_SENT = "already_sent"
CANCELLED = "cancelled"
MISSING_CONVERSATION = "missing_conversation"
MISSING_REVIEW_URL = "missing_review_url"
FLOW_FAILED = "flow_failed"
SEND_FAILED = "send_failed"


@dataclass
class SweepReport:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    due: int = 0

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


def review_request_id(reservation_id: str) -> str:
    return f"rr_{reservation_id}"


class ReviewDispatcher:
    """Launches the review flow for finished visits."""

    def __init__(
        self,
        store: Store,
        channel: MessageChannel,
        interpreter: ConversationInterpreter | None = None,
        *,
        delay_hours: float | None = None,
        lookback_days: int | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self._interpreter = interpreter or ConversationInterpreter()
        self._delay = timedelta(
            hours=delay_hours if delay_hours and delay_hours > 0 else settings.review_delay_hours
        )
        self._lookback_days = lookback_days or settings.review_lookback_days
        self._locks = locks or KeyedLocks()

    # ── Selection ─────────────────────────────────────────────

    def visit_end(self, reservation: Reservation, account: AccountSettings) -> Optional[datetime]:
        """UTC instant after which the review may be requested, or None if unparseable."""
        if not (fields.is_iso_date(reservation.date) and fields.is_clock_time(reservation.time)):
            return None
        zone = reservation.time_zone or account.calendar.time_zone
        start = zoned_to_utc(
            date.fromisoformat(reservation.date), time.fromisoformat(reservation.time), zone
        )
        return start + self._delay

    def is_due(self, reservation: Reservation, account: AccountSettings, now: datetime) -> bool:
        if reservation.status not in ELIGIBLE_STATUSES:
            return False
        if reservation.status == ReservationStatus.COMPLETED:
            return True
        due_at = self.visit_end(reservation, account)
        return due_at is not None and due_at <= now

    async def _account(self, account_id: str) -> AccountSettings:
        account = await self._store.accounts.get(account_id)
        return account or AccountSettings(account_id=account_id)

    async def sweep(self, ctx: TurnContext, now: datetime | None = None) -> SweepReport:
        """Dispatch review requests for every reservation that is due."""
        now = now or datetime.now(timezone.utc)
        log = ctx.logger("chatbooking.reviews")
        earliest = (now - timedelta(days=self._lookback_days)).date().isoformat()
        report = SweepReport()

        for reservation in await self._store.reservations.list():
            if reservation.status not in ELIGIBLE_STATUSES or reservation.date < earliest:
                continue
            account = await self._account(reservation.account_id)
            if not self.is_due(reservation, account, now):
                continue
            report.due += 1
            outcome = await self.dispatch(ctx.child(reservation.id), reservation, account)
            report.processed += 1
            if outcome == SENT:
                report.sent += 1
            elif outcome in (FLOW_FAILED, SEND_FAILED):
                report.failed += 1
            else:
                report.skipped += 1

        log.info(
            "Review sweep: due=%d sent=%d skipped=%d failed=%d",
            report.due,
            report.sent,
            report.skipped,
            report.failed,
        )
        return report

    # ── Dispatch ──────────────────────────────────────────────

    async def _set_status(
        self,
        reservation: Reservation,
        conversation_id: Optional[str],
        status: ReviewStatus,
        **extra: Any,
    ) -> ReviewRequest:
        key = review_request_id(reservation.id)
        existing = await self._store.review_requests.get(key)
        request = existing or ReviewRequest(
            id=key,
            reservation_id=reservation.id,
            account_id=reservation.account_id,
        )
        request = request.model_copy(
            update={
                "conversation_id": conversation_id or request.conversation_id,
                "status": status,
                "updated_at": utcnow(),
                **extra,
            }
        )
        await self._store.review_requests.upsert(request)
        return request

    async def _review_flow(self, account: AccountSettings) -> FlowGraph:
        flow = await self._store.flows.get(account.review_flow_id)
        return flow if flow is not None else load_review_flow()

    async def dispatch(
        self,
        ctx: TurnContext,
        reservation: Reservation,
        account: AccountSettings | None = None,
    ) -> str:
        """Send the review request for one reservation; returns the outcome code."""
        log = ctx.logger("chatbooking.reviews")
        account = account or await self._account(reservation.account_id)

        if reservation.status in (ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW):
            log.info("Review skipped: reservation is %s", reservation.status.value)
            return CANCELLED

        # Shares the key with inbound turns so a review never interleaves with one
        async with self._locks.hold(reservation.conversation_id or reservation.id):
            existing = await self._store.review_requests.get(review_request_id(reservation.id))
            if existing is not None and existing.status in FINAL_REVIEW_STATUSES:
                return ALREADY_SENT

            if not reservation.conversation_id:
                await self._set_status(reservation, None, ReviewStatus.SKIPPED)
                log.warning("Review skipped: reservation has no conversation")
                return MISSING_CONVERSATION

            conversation = await self._store.conversations.get(reservation.conversation_id)
            if conversation is None:
                await self._set_status(reservation, None, ReviewStatus.SKIPPED)
                log.warning("Review skipped: conversation not found")
                return MISSING_CONVERSATION

            if not account.review_url:
                await self._set_status(reservation, conversation.id, ReviewStatus.SKIPPED)
                log.warning("Review skipped: account has no review link")
                return MISSING_REVIEW_URL

            request = await self._set_status(reservation, conversation.id, ReviewStatus.PENDING)
            return await self._send(ctx, reservation, account, conversation, request)

    async def _send(
        self,
        ctx: TurnContext,
        reservation: Reservation,
        account: AccountSettings,
        conversation: Conversation,
        request: ReviewRequest,
    ) -> str:
        log = ctx.logger("chatbooking.reviews")
        flow = await self._review_flow(account)
        merged = fields.merge_variables(
            conversation.variables, {fields.GOOGLE_REVIEW_URL: account.review_url}
        )
        entry = review_entry_node(flow)
        outcome = None
        if entry is not None:
            outcome = self._interpreter.enter(ctx, conversation, flow, entry, merged)
        if outcome is None or outcome.dead_end or outcome.message is None:
            await self._set_status(reservation, conversation.id, ReviewStatus.FAILED, error="flow_failed")
            log.error("Review flow %s has no usable entry node", flow.id)
            return FLOW_FAILED

        result = await self._channel.send_message(conversation.sender_id, outcome.message)
        if not result.success:
            await self._set_status(
                reservation, conversation.id, ReviewStatus.FAILED, error=result.error
            )
            log.error("Review request send failed: %s", result.error)
            return SEND_FAILED

        sent_at = utcnow()
        await self._store.messages.upsert(
            MessageRecord(
                id=result.message_id or f"msg_{request.id}_{int(sent_at.timestamp())}",
                conversation_id=conversation.id,
                account_id=conversation.account_id,
                direction=MessageDirection.OUTBOUND,
                text=outcome.message.text,
                node_id=outcome.message.node_id,
            )
        )
        await self._store.conversations.upsert(
            outcome.conversation.model_copy(
                update={"review_request_id": request.id, "last_message_at": sent_at}
            )
        )
        await self._set_status(
            reservation, conversation.id, ReviewStatus.SENT, sent_at=sent_at, error=None
        )
        log.info("Review request %s sent", request.id)
        return SENT

    # ── Responses ─────────────────────────────────────────────

    async def record_response(
        self,
        ctx: TurnContext,
        conversation: Conversation,
        collected: dict[str, Any],
    ) -> Optional[ReviewRequest]:
        """Advance the review request with a rating or written feedback."""
        if not conversation.review_request_id:
            return None
        rating = collected.get(fields.REVIEW_RATING)
        feedback = collected.get(fields.REVIEW_FEEDBACK)
        if rating is None and feedback is None:
            return None

        request = await self._store.review_requests.get(conversation.review_request_id)
        if request is None:
            return None
        update: dict[str, Any] = {"updated_at": utcnow()}
        if rating is not None:
            update.update(status=ReviewStatus.RATED, rating=rating)
        if feedback is not None:
            update.update(status=ReviewStatus.COMPLETED, feedback=str(feedback))
        request = request.model_copy(update=update)
        await self._store.review_requests.upsert(request)
        ctx.logger("chatbooking.reviews").info(
            "Review request %s is now %s", request.id, request.status.value
        )
        return request
