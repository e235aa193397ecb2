from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime

import anyio
from anyio.abc import TaskGroup

from .logging import get_logger
from .telegram.client import BotClient
from .telegram.render import code_block, escape_markdown, render_markdown
from .telegram.types import (
    TelegramCallbackQuery,
    TelegramIncomingUpdate,
    TelegramSender,
)

logger = get_logger(__name__)

UNIDENTIFIED_TEXT = "Unable to identify user. Please try again."
AUTO_KILL_DELAY_S = 1.0


def denial_text(user_id: int) -> str:
    return (
        "🚫 You don't have access to this bot.\n\n"
        f"Your Telegram User ID is: {user_id}\n\n"
        "Please contact the bot administrator to get access."
    )


def auto_kill_text(user_id: int) -> str:
    return (
        "🚫 Unauthorized access detected.\n\n"
        f"The Telegram User ID is: {user_id}\n\n"
        "The bot worker is now shutting down for security reasons."
    )


def _user_lines(sender: TelegramSender) -> list[str]:
    username = f"@{sender.username}" if sender.username else "No username"
    return [
        "**User Information:**",
        f"- Name: {escape_markdown(sender.display_name)}",
        f"- Username: {escape_markdown(username)}",
        f"- User ID: `{sender.id}`",
    ]


def admin_notice(title: str, sender: TelegramSender, label: str, detail: str) -> str:
    lines = [title, "", *_user_lines(sender), "", f"**{label}:**"]
    lines.append(code_block(detail))
    lines.append("")
    lines.append(f"_Time: {escape_markdown(datetime.now().isoformat(sep=' '))}_")
    return "\n".join(lines)


def _attempted_action(update: TelegramIncomingUpdate) -> str:
    if isinstance(update, TelegramCallbackQuery):
        return update.data or "Unknown action"
    return update.text or "Unknown action"


class AccessGate:
    """Allow-list check that runs before any command handler."""

    def __init__(
        self,
        bot: BotClient,
        task_group: TaskGroup,
        *,
        allowed_user_ids: Iterable[int],
        admin_user_id: int | None = None,
        auto_kill: bool = False,
        notice_delete_after_s: float = 10.0,
        on_kill: Callable[[], None] | None = None,
    ) -> None:
        self._bot = bot
        self._tg = task_group
        self.allowed_user_ids = frozenset(allowed_user_ids)
        self.admin_user_id = admin_user_id
        self.auto_kill = auto_kill
        self._notice_delete_after_s = notice_delete_after_s
        self._on_kill = on_kill
        logger.info(
            "access.configured",
            allowed=len(self.allowed_user_ids),
            admin_user_id=admin_user_id,
            auto_kill=auto_kill,
        )

    def is_allowed(self, user_id: int) -> bool:
        return user_id in self.allowed_user_ids

    def is_admin(self, user_id: int) -> bool:
        return self.admin_user_id is not None and self.admin_user_id == user_id

    async def check(self, update: TelegramIncomingUpdate) -> bool:
        """Return ``True`` when ``update`` may proceed; reply and notify otherwise."""
        sender = update.sender
        if sender is None:
            await self._reply(update, UNIDENTIFIED_TEXT)
            return False
        if self.is_allowed(sender.id):
            return True

        logger.warning(
            "access.denied",
            user_id=sender.id,
            chat_id=update.chat_id,
            auto_kill=self.auto_kill,
        )
        await self._notify_admin(
            admin_notice(
                "🚨 **Unauthorized Access Attempt**",
                sender,
                "Attempted Action",
                _attempted_action(update),
            )
        )
        if self.auto_kill:
            await self._reply(update, auto_kill_text(sender.id))
            logger.error("access.auto_kill", user_id=sender.id)
            self._tg.start_soon(self._kill_later)
            return False
        await self._reply(update, denial_text(sender.id))
        return False

    async def notify_download(self, sender: TelegramSender, url: str) -> None:
        if self.is_admin(sender.id):
            return
        await self._notify_admin(
            admin_notice("📥 **Download Request**", sender, "Requested Link", url)
        )

    async def _reply(self, update: TelegramIncomingUpdate, text: str) -> None:
        if isinstance(update, TelegramCallbackQuery):
            await self._bot.answer_callback_query(update.callback_query_id)
        await self._bot.send_message(chat_id=update.chat_id, text=text)

    async def _notify_admin(self, md: str) -> None:
        admin_id = self.admin_user_id
        if admin_id is None:
            return
        text, entities = render_markdown(md)
        sent = await self._bot.send_message(
            chat_id=admin_id, text=text, entities=entities
        )
        if sent is None:
            logger.warning("access.admin_notify_failed", admin_user_id=admin_id)
            return
        if self._notice_delete_after_s > 0:
            self._tg.start_soon(
                self._delete_later, admin_id, int(sent["message_id"])
            )

    async def _delete_later(self, chat_id: int, message_id: int) -> None:
        await anyio.sleep(self._notice_delete_after_s)
        await self._bot.delete_message(chat_id=chat_id, message_id=message_id)

    async def _kill_later(self) -> None:
        await anyio.sleep(AUTO_KILL_DELAY_S)
        if self._on_kill is not None:
            self._on_kill()
