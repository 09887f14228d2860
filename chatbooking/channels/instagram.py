"""InstagramChannel: MessageChannel for the Instagram Messaging (Graph) API.

Messages are POSTed to ``/me/messages``.  Server errors (5xx), rate limits
(429), timeouts and connection errors are retried with exponential backoff;
other client errors are returned immediately.

Request shape::

    → {"recipient": {"id": "<IGSID>"},
       "message": {"text": "...",
                   "quick_replies": [{"content_type": "text",
                                      "title": "<=20 chars",
                                      "payload": "<=1000 chars"}]}}
    ← {"recipient_id": "...", "message_id": "..."}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from chatbooking.channels.base import MessageChannel, SendResult
from chatbooking.config import settings
from chatbooking.context import redact_pii
from chatbooking.errors import ChannelError
from chatbooking.models.conversation import OutboundMessage

log = logging.getLogger("chatbooking.channels.instagram")

GRAPH_BASE_URL = "https://graph.facebook.com"
MAX_QUICK_REPLIES = 13
MAX_TITLE_LENGTH = 20
MAX_PAYLOAD_LENGTH = 1000

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0


def build_text_payload(recipient_id: str, message: OutboundMessage) -> dict[str, Any]:
    body: dict[str, Any] = {"text": message.text}
    if message.quick_replies:
        body["quick_replies"] = [
            {
                "content_type": "text",
                "title": qr.label[:MAX_TITLE_LENGTH],
                "payload": qr.payload[:MAX_PAYLOAD_LENGTH],
            }
            for qr in message.quick_replies[:MAX_QUICK_REPLIES]
        ]
    return {"recipient": {"id": recipient_id}, "message": body}


def build_image_payload(recipient_id: str, image_url: str) -> dict[str, Any]:
    return {
        "recipient": {"id": recipient_id},
        "message": {
            "attachment": {"type": "image", "payload": {"url": image_url, "is_reusable": True}}
        },
    }


class InstagramChannel(MessageChannel):
    """Sends DMs through the Graph API with a page access token."""

    def __init__(
        self,
        access_token: str | None = None,
        *,
        graph_version: str | None = None,
        timeout_seconds: float | None = None,
        backoff_seconds: float = INITIAL_BACKOFF_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = access_token or settings.instagram_page_access_token
        if not self._token:
            raise ChannelError("An Instagram page access token is required.")
        version = graph_version or settings.instagram_graph_version
        self._backoff = backoff_seconds
        self._client = httpx.AsyncClient(
            base_url=f"{GRAPH_BASE_URL}/{version}",
            timeout=timeout_seconds or settings.send_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, body: dict[str, Any]) -> SendResult:
        last_error: Optional[str] = None
        last_status: Optional[int] = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.post(
                    "/me/messages", params={"access_token": self._token}, json=body
                )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error, last_status = type(exc).__name__, None
            else:
                if response.status_code < 400:
                    data = response.json() if response.content else {}
                    return SendResult(success=True, message_id=data.get("message_id"))
                last_status = response.status_code
                last_error = self._error_message(response)
                if response.status_code != 429 and response.status_code < 500:
                    break

            if attempt < MAX_RETRIES:
                delay = self._backoff * (2 ** (attempt - 1))
                log.warning(
                    "Instagram send attempt %d/%d failed (%s). Retrying in %.1fs",
                    attempt,
                    MAX_RETRIES,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        return SendResult(success=False, error=last_error, status_code=last_status)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error", {}).get("message") or f"HTTP {response.status_code}"
        except ValueError:
            return f"HTTP {response.status_code}"

    async def send_message(self, recipient_id: str, message: OutboundMessage) -> SendResult:
        if message.image_url:
            result = await self._post(build_image_payload(recipient_id, message.image_url))
            if not result.success:
                log.error(
                    "Instagram image send to %s failed: %s", redact_pii(recipient_id), result.error
                )
                return result

        result = await self._post(build_text_payload(recipient_id, message))
        if result.success:
            log.info("Instagram message sent to %s", redact_pii(recipient_id))
        else:
            log.error("Instagram send to %s failed: %s", redact_pii(recipient_id), result.error)
        return result
