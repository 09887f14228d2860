"""Data models for the booking layer."""

from .account import AccountSettings
from .calendar import CalendarSettings
from .conversation import (
    Conversation,
    ConversationStatus,
    MessageDirection,
    MessageRecord,
    OutboundMessage,
    OutboundQuickReply,
)
from .reservation import (
    Contact,
    Reservation,
    ReservationStatus,
    ReviewRequest,
    ReviewStatus,
)

__all__ = [
    "AccountSettings",
    "CalendarSettings",
    "Contact",
    "Conversation",
    "ConversationStatus",
    "MessageDirection",
    "MessageRecord",
    "OutboundMessage",
    "OutboundQuickReply",
    "Reservation",
    "ReservationStatus",
    "ReviewRequest",
    "ReviewStatus",
]
