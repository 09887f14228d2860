"""Contact resolution for inbound senders."""

from __future__ import annotations

import secrets
from typing import Optional

from chatbooking.models import Contact
from chatbooking.models.conversation import utcnow
from chatbooking.repository import Store, contact_key


async def find_or_create_contact(
    store: Store,
    account_id: str,
    sender_id: str,
    display_name: Optional[str] = None,
) -> Contact:
    """Return the contact for ``(account_id, sender_id)``, creating it if needed.

    A single conditional insert keyed by the pair decides the winner when two
    first messages from the same sender race; the loser reads back the
    winner's row instead of creating a second one.
    """
    candidate = Contact(
        id=f"ct_{secrets.token_hex(8)}",
        account_id=account_id,
        sender_id=sender_id,
        display_name=display_name,
        last_seen_at=utcnow(),
    )
    contact, _ = await store.contacts.insert_if_absent(
        candidate, key=contact_key(account_id, sender_id)
    )
    return contact


async def touch_contact(store: Store, contact: Contact, display_name: Optional[str] = None) -> Contact:
    """Record activity and fill in the display name once it becomes known."""
    update: dict = {"last_seen_at": utcnow()}
    if display_name and not contact.display_name:
        update["display_name"] = display_name
    updated = contact.model_copy(update=update)
    await store.contacts.upsert(updated)
    return updated
