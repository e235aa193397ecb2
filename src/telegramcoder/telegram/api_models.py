from __future__ import annotations

import msgspec

__all__ = [
    "CallbackQuery",
    "Chat",
    "Message",
    "Update",
    "User",
]


class User(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    is_bot: bool = False
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class Chat(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    type: str


class Message(msgspec.Struct, forbid_unknown_fields=False):
    message_id: int
    chat: Chat | None = None
    from_: User | None = msgspec.field(default=None, name="from")
    date: int | None = None
    text: str | None = None
    caption: str | None = None


class CallbackQuery(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    from_: User | None = msgspec.field(default=None, name="from")
    message: Message | None = None
    data: str | None = None


class Update(msgspec.Struct, forbid_unknown_fields=False):
    update_id: int
    message: Message | None = None
    callback_query: CallbackQuery | None = None
