"""Per-turn context threaded through every component call.

A ``TurnContext`` is created for each inbound message or sweep tick and
passed down explicitly; components log through ``ctx.logger(...)`` so every
line carries the account and request ids without a process-wide singleton.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Any

REDACTED_VALUE = "[REDACTED]"

_SENSITIVE_KEY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"authorization",
        r"token",
        r"secret",
        r"password",
        r"email",
        r"phone",
        r"^(message_?)?text$",
        r"^content$",
        r"^(quick_?reply|button)_?payload$",
    )
]


def redact_pii(value: str) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


def _is_sensitive_key(key: str) -> bool:
    return any(p.search(key) for p in _SENSITIVE_KEY_PATTERNS)


def redact_metadata(value: Any, depth: int = 0) -> Any:
    """Return a copy of *value* with sensitive keys replaced, recursively."""
    if depth > 6:
        return REDACTED_VALUE
    if isinstance(value, dict):
        return {
            k: REDACTED_VALUE if _is_sensitive_key(str(k)) else redact_metadata(v, depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_metadata(item, depth + 1) for item in value]
    return value


class _ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        ctx: TurnContext = self.extra["ctx"]
        return f"[{ctx.tag}] {msg}", kwargs


@dataclass(frozen=True)
class TurnContext:
    """Identifiers for one unit of work (a conversation turn or a sweep tick)."""

    account_id: str
    request_id: str = field(default_factory=lambda: secrets.token_hex(8))
    correlation_id: str = ""

    @property
    def tag(self) -> str:
        parts = [f"acct={self.account_id}", f"req={self.request_id}"]
        if self.correlation_id:
            parts.append(f"corr={self.correlation_id}")
        return " ".join(parts)

    def logger(self, name: str) -> logging.LoggerAdapter:
        return _ContextAdapter(logging.getLogger(name), {"ctx": self})

    def child(self, correlation_id: str) -> "TurnContext":
        """Same request, narrower correlation (e.g. one reservation in a sweep)."""
        return TurnContext(
            account_id=self.account_id,
            request_id=self.request_id,
            correlation_id=correlation_id,
        )
