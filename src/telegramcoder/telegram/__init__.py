from __future__ import annotations

from .client import BotClient, RetryAfter, TelegramClient
from .parsing import parse_incoming_update, poll_incoming
from .types import (
    TelegramCallbackQuery,
    TelegramIncomingMessage,
    TelegramIncomingUpdate,
    TelegramSender,
)

__all__ = [
    "BotClient",
    "RetryAfter",
    "TelegramCallbackQuery",
    "TelegramClient",
    "TelegramIncomingMessage",
    "TelegramIncomingUpdate",
    "TelegramSender",
    "parse_incoming_update",
    "poll_incoming",
]
