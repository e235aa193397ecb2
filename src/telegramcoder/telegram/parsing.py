from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import anyio
import msgspec

from ..logging import get_logger
from .api_models import CallbackQuery, Message, Update, User
from .client import BotClient
from .types import (
    TelegramCallbackQuery,
    TelegramIncomingMessage,
    TelegramIncomingUpdate,
    TelegramSender,
)

logger = get_logger(__name__)

ALLOWED_UPDATES = ["message", "callback_query"]


def parse_incoming_update(
    update: Update | dict[str, Any],
) -> TelegramIncomingUpdate | None:
    raw_message: dict[str, Any] | None = None
    raw_callback: dict[str, Any] | None = None
    if isinstance(update, dict):
        if isinstance(update.get("message"), dict):
            raw_message = update["message"]
        if isinstance(update.get("callback_query"), dict):
            raw_callback = update["callback_query"]
        try:
            update = msgspec.convert(update, type=Update)
        except msgspec.ValidationError as exc:
            logger.debug("telegram.update.invalid", error=str(exc))
            return None

    if update.message is not None:
        return _parse_message(update.update_id, update.message, raw=raw_message)
    if update.callback_query is not None:
        return _parse_callback_query(
            update.update_id, update.callback_query, raw=raw_callback
        )
    return None


def _sender(user: User | None) -> TelegramSender | None:
    if user is None:
        return None
    return TelegramSender(
        id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
    )


def _parse_message(
    update_id: int, msg: Message, *, raw: dict[str, Any] | None
) -> TelegramIncomingMessage | None:
    text = msg.text if msg.text is not None else msg.caption
    if text is None or msg.chat is None:
        return None
    return TelegramIncomingMessage(
        update_id=update_id,
        chat_id=msg.chat.id,
        message_id=msg.message_id,
        text=text,
        sender=_sender(msg.from_),
        raw=raw if raw is not None else msgspec.to_builtins(msg),
    )


def _parse_callback_query(
    update_id: int, query: CallbackQuery, *, raw: dict[str, Any] | None
) -> TelegramCallbackQuery | None:
    msg = query.message
    if msg is None or msg.chat is None:
        return None
    return TelegramCallbackQuery(
        update_id=update_id,
        chat_id=msg.chat.id,
        message_id=msg.message_id,
        callback_query_id=query.id,
        data=query.data,
        sender=_sender(query.from_),
        raw=raw if raw is not None else msgspec.to_builtins(query),
    )


async def poll_incoming(
    bot: BotClient,
    *,
    offset: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> AsyncIterator[TelegramIncomingUpdate]:
    while True:
        updates = await bot.get_updates(
            offset=offset,
            timeout_s=50,
            allowed_updates=ALLOWED_UPDATES,
        )
        if updates is None:
            logger.info("telegram.get_updates.failed")
            await sleep(2)
            continue
        logger.debug("telegram.updates", count=len(updates))
        for upd in updates:
            update_id = upd.get("update_id")
            if isinstance(update_id, int):
                offset = update_id + 1
            parsed = parse_incoming_update(upd)
            if parsed is not None:
                yield parsed


async def drain_backlog(bot: BotClient) -> int | None:
    """Skip updates that queued up while the bot was offline."""
    offset: int | None = None
    drained = 0
    while True:
        updates = await bot.get_updates(
            offset=offset, timeout_s=0, allowed_updates=ALLOWED_UPDATES
        )
        if updates is None:
            logger.info("telegram.backlog.drain_failed")
            return offset
        if not updates:
            if drained:
                logger.info("telegram.backlog.drained", count=drained)
            return offset
        offset = updates[-1]["update_id"] + 1
        drained += len(updates)
