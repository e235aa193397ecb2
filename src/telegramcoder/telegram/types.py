from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypeAlias


@dataclass(frozen=True, slots=True)
class TelegramSender:
    id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or "Unknown"


@dataclass(frozen=True, slots=True)
class TelegramIncomingMessage:
    update_id: int
    chat_id: int
    message_id: int
    text: str
    sender: TelegramSender | None
    raw: dict[str, Any] | None = None

    @property
    def command(self) -> str | None:
        """Bot command name without the slash or @botname suffix."""
        stripped = self.text.lstrip()
        if not stripped.startswith("/"):
            return None
        token = stripped.split(maxsplit=1)[0][1:]
        name = token.split("@", 1)[0].lower()
        return name or None

    @property
    def args(self) -> str:
        stripped = self.text.lstrip()
        if not stripped.startswith("/"):
            return stripped
        parts = stripped.split(maxsplit=1)
        return parts[1].strip() if len(parts) > 1 else ""


@dataclass(frozen=True, slots=True)
class TelegramCallbackQuery:
    update_id: int
    chat_id: int
    message_id: int
    callback_query_id: str
    data: str | None
    sender: TelegramSender | None
    raw: dict[str, Any] | None = None


TelegramIncomingUpdate: TypeAlias = TelegramIncomingMessage | TelegramCallbackQuery
