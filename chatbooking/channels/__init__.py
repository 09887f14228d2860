"""Outbound message channels."""

from .base import MessageChannel, SendResult

__all__ = ["MessageChannel", "SendResult"]
