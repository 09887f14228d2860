"""MessageChannel ABC: delivers outbound bot messages to a chat surface.

Delivery is best effort.  Implementations log failures and report them in
the returned ``SendResult``; they never raise for transport problems, so a
failed send cannot abort the caller's bookkeeping.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from chatbooking.models.conversation import OutboundMessage


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


class MessageChannel(ABC):
    """Abstract outbound transport (Instagram DM, test recorder, ...)."""

    @abstractmethod
    async def send_message(self, recipient_id: str, message: OutboundMessage) -> SendResult:
        """Send *message* to *recipient_id*.

        Images are sent before the text; quick replies travel with the text.
        """

    async def close(self) -> None:
        """Release transport resources.  Safe to call multiple times."""
