"""Conversation state, message records and outbound bot messages."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class Conversation(BaseModel):
    """One chat thread with a sender.

    ``current_flow_id`` / ``current_node_id`` are the interpreter's program
    counter; ``variables`` accumulates the booking fields collected so far.
    """

    id: str
    account_id: str
    sender_id: str
    contact_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    current_flow_id: Optional[str] = None
    current_node_id: Optional[str] = None
    variables: dict[str, Any] = {}
    # Set while the conversation runs the review flow for a reservation
    review_request_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageRecord(BaseModel):
    id: str
    conversation_id: str
    account_id: str
    direction: MessageDirection
    text: str = ""
    payload: Optional[str] = None
    node_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class OutboundQuickReply(BaseModel):
    label: str
    payload: str


class OutboundMessage(BaseModel):
    """Exactly one of these is produced per conversation turn."""

    text: str
    image_url: Optional[str] = None
    quick_replies: list[OutboundQuickReply] = []
    node_id: Optional[str] = None
