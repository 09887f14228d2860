"""Reservation, review-request and contact records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from chatbooking.models.conversation import utcnow


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class Reservation(BaseModel):
    """A booking.

    ``external_event_id`` and ``external_calendar_id`` are only set when the
    calendar event was created; both empty is a valid local-only booking.
    """

    id: str
    account_id: str
    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    guest_name: str = Field(min_length=1, max_length=100)
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    guest_count: int = Field(default=1, ge=1, le=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=254)
    special_requests: Optional[str] = Field(default=None, max_length=500)
    status: ReservationStatus = ReservationStatus.PENDING
    external_event_id: Optional[str] = None
    external_calendar_id: Optional[str] = None
    time_zone: Optional[str] = None
    dedup_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_local_only(self) -> bool:
        return not self.external_event_id


class ReviewStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RATED = "rated"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


# Statuses that gate any further dispatch for the reservation
FINAL_REVIEW_STATUSES = frozenset(
    {ReviewStatus.SENT, ReviewStatus.RATED, ReviewStatus.COMPLETED, ReviewStatus.SKIPPED}
)


class ReviewRequest(BaseModel):
    """One review solicitation per reservation (keyed by reservation id)."""

    id: str
    reservation_id: str
    account_id: str
    conversation_id: Optional[str] = None
    status: ReviewStatus = ReviewStatus.PENDING
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    feedback: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Contact(BaseModel):
    id: str
    account_id: str
    sender_id: str
    display_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_seen_at: Optional[datetime] = None
