from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import anyio
from anyio.abc import TaskGroup

from .access import AccessGate
from .config import Settings
from .errors import (
    FileMentionCancelled,
    FileMentionNotFound,
    NoActiveSession,
    ServerStartFailed,
    TelegramCoderError,
    format_error,
)
from .logging import get_logger
from .opencode.client import OpenCodeClient
from .opencode.coordinator import RenderCoordinator, RenderPolicy
from .opencode.events import EventClassifier
from .opencode.mentions import (
    FileMentionResolver,
    TelegramFilePicker,
    format_file_context,
    parse_mentions,
)
from .opencode.server import OpenCodeServer
from .opencode.service import OpenCodeService
from .telegram.client import BotClient
from .telegram.parsing import drain_backlog, poll_incoming
from .telegram.render import (
    RESPONSE_CHUNK_LIMIT,
    escape_markdown,
    render_markdown,
    split_into_chunks,
)
from .telegram.types import (
    TelegramCallbackQuery,
    TelegramIncomingMessage,
    TelegramIncomingUpdate,
)

logger = get_logger(__name__)

STATUS_DELETE_AFTER_CHUNKS_S = 2.0


@dataclass(frozen=True, slots=True)
class BotCommand:
    name: str
    description: str


COMMANDS: tuple[BotCommand, ...] = (
    BotCommand("start", "Show the help message"),
    BotCommand("help", "Show the help message"),
    BotCommand("opencode", "Start an OpenCode AI session"),
    BotCommand("prompt", "Send a prompt to OpenCode"),
    BotCommand("esc", "Stop the running operation"),
    BotCommand("agent", "Switch to the next agent"),
    BotCommand("rename", "Rename the current session"),
    BotCommand("sessions", "List recent sessions"),
    BotCommand("endsession", "End your current OpenCode session"),
)

HELP_TEXT = "\n".join(
    [
        "👋 Welcome to TelegramCoder!",
        "",
        "Available commands:",
        "/start - Show this help message",
        "/help - Show this help message",
        "/opencode - Start an OpenCode AI session",
        "/prompt <message> - Send a prompt to OpenCode",
        "/esc - Stop the running operation",
        "/agent - Switch to the next agent",
        "/rename <title> - Rename the current session",
        "/sessions - List recent sessions",
        "/endsession - End your current OpenCode session",
        "",
        "🤖 OpenCode AI:",
        "- Start a coding session with /opencode",
        "- Send prompts with /prompt <your message> or plain text",
        '- Reference files with @path or @"path with spaces"',
        "- Receive real-time updates as the AI works",
        "",
        "🚀 Get started by typing /opencode!",
    ]
)

STARTING_TEXT = "🔄 Starting OpenCode session..."
SERVER_STARTING_TEXT = (
    "🔄 OpenCode server not running. Starting server...\n\n"
    "This may take up to 30 seconds."
)
SERVER_STARTED_TEXT = "✅ OpenCode server started!\n\n🔄 Creating session..."
SENDING_TEXT = "🔄 Sending prompt to OpenCode..."
STAGE_TEXT = {
    "starting_server": SERVER_STARTING_TEXT,
    "server_started": SERVER_STARTED_TEXT,
}


def _rendered(md: str) -> tuple[str, list[dict] | None]:
    text, entities = render_markdown(md)
    if not text.strip():
        return md, None
    return text, entities


Handler = Callable[[TelegramIncomingMessage], Awaitable[None]]


class OpenCodeBot:
    """Command router for the OpenCode bot."""

    def __init__(
        self,
        bot: BotClient,
        settings: Settings,
        task_group: TaskGroup,
        *,
        client: OpenCodeClient,
        server: OpenCodeServer | None = None,
        on_kill: Callable[[], None] | None = None,
    ) -> None:
        self.bot = bot
        self.settings = settings
        self._tg = task_group
        self.coordinator = RenderCoordinator(
            bot,
            task_group,
            policy=RenderPolicy(
                throttle_s=settings.render_throttle_ms / 1000,
                text_delete_after_s=settings.render_text_delete_ms / 1000,
                status_delete_after_s=settings.render_status_delete_ms / 1000,
                max_lines=settings.render_max_lines,
            ),
        )
        self.service = OpenCodeService(
            client,
            self.coordinator,
            task_group,
            classifier=EventClassifier(unhandled=settings.unhandled_events),
            server=server,
            notice_delete_after_s=settings.message_delete_timeout_s,
        )
        self.gate = AccessGate(
            bot,
            task_group,
            allowed_user_ids=settings.allowed_user_ids,
            admin_user_id=settings.admin_user_id,
            auto_kill=settings.auto_kill,
            notice_delete_after_s=settings.message_delete_timeout_s,
            on_kill=on_kill,
        )
        self.resolver = FileMentionResolver(
            client,
            max_results=settings.file_mention_max_results,
            max_file_size=settings.file_mention_max_size,
        )
        self.picker = TelegramFilePicker(bot)
        self._handlers: dict[str, Handler] = {
            "start": self.handle_help,
            "help": self.handle_help,
            "opencode": self.handle_opencode,
            "prompt": self.handle_prompt,
            "esc": self.handle_esc,
            "agent": self.handle_agent,
            "rename": self.handle_rename,
            "sessions": self.handle_sessions,
            "endsession": self.handle_end_session,
        }

    @property
    def delete_after_s(self) -> float:
        return self.settings.message_delete_timeout_s

    async def set_commands(self) -> None:
        ok = await self.bot.set_my_commands(
            [{"command": c.name, "description": c.description} for c in COMMANDS]
        )
        if not ok:
            logger.warning("bot.set_commands_failed")

    async def handle_update(self, update: TelegramIncomingUpdate) -> None:
        try:
            if not await self.gate.check(update):
                return
            if isinstance(update, TelegramCallbackQuery):
                await self.handle_callback(update)
            else:
                await self.handle_message(update)
        except Exception:
            logger.exception(
                "bot.update_failed",
                update_id=update.update_id,
                chat_id=update.chat_id,
            )

    async def handle_callback(self, query: TelegramCallbackQuery) -> None:
        if await self.picker.handle_callback(query):
            return
        logger.debug("bot.callback.unhandled", data=query.data)
        await self.bot.answer_callback_query(query.callback_query_id)

    async def handle_message(self, msg: TelegramIncomingMessage) -> None:
        command = msg.command
        if command is None:
            await self.handle_prompt(msg)
            return
        handler = self._handlers.get(command)
        if handler is None:
            await self._reply(
                msg, "Unknown command. Use /help to see available commands."
            )
            return
        logger.info(
            "bot.command", command=command, chat_id=msg.chat_id, user_id=_user(msg)
        )
        await handler(msg)

    async def handle_help(self, msg: TelegramIncomingMessage) -> None:
        await self._reply(msg, HELP_TEXT)

    async def handle_opencode(self, msg: TelegramIncomingMessage) -> None:
        user_id = _user(msg)
        if self.service.has_session(user_id):
            await self._reply(
                msg,
                "ℹ️ You already have an active OpenCode session. "
                "Use /prompt to send messages.",
            )
            return

        status = await self.bot.send_message(chat_id=msg.chat_id, text=STARTING_TEXT)
        if status is None:
            return
        status_id = int(status["message_id"])

        async def on_status(stage: str) -> None:
            text = STAGE_TEXT.get(stage)
            if text is not None:
                await self.bot.edit_message_text(
                    chat_id=msg.chat_id, message_id=status_id, text=text
                )

        try:
            session = await self.service.open_session(
                user_id, msg.chat_id, on_status=on_status
            )
        except ServerStartFailed as exc:
            text, entities = _rendered(
                "❌ Failed to start OpenCode server.\n\n"
                f"{escape_markdown(str(exc))}\n\n"
                "Please start the server manually using:\n`opencode serve`"
            )
            await self.bot.edit_message_text(
                chat_id=msg.chat_id, message_id=status_id, text=text, entities=entities
            )
            return
        except TelegramCoderError as exc:
            await self.bot.edit_message_text(
                chat_id=msg.chat_id,
                message_id=status_id,
                text=format_error("start OpenCode session", exc),
            )
            return

        session.last_message_id = status_id
        text, entities = _rendered(
            f"Session ID: `{session.session_id}`\n\n"
            "Use /prompt <your message> to send prompts to OpenCode."
        )
        await self.bot.edit_message_text(
            chat_id=msg.chat_id, message_id=status_id, text=text, entities=entities
        )

    async def handle_prompt(self, msg: TelegramIncomingMessage) -> None:
        user_id = _user(msg)
        if not self.service.has_session(user_id):
            await self._reply(msg, f"❌ {NoActiveSession()}")
            return
        prompt = msg.args
        if not prompt:
            await self._reply(
                msg, "❌ Please provide a prompt. Usage: /prompt <your message>"
            )
            return

        file_context = None
        mentions = parse_mentions(prompt)
        if mentions:
            try:
                resolved = await self.resolver.resolve(
                    mentions, self.picker.for_chat(msg.chat_id)
                )
            except FileMentionNotFound as exc:
                await self._reply(msg, f"❌ {exc}")
                return
            except FileMentionCancelled:
                logger.info("bot.prompt.cancelled", user_id=user_id)
                return
            except TelegramCoderError as exc:
                await self._reply(msg, format_error("resolve file mentions", exc))
                return
            file_context = format_file_context(resolved)

        status = await self.bot.send_message(chat_id=msg.chat_id, text=SENDING_TEXT)
        status_id = int(status["message_id"]) if status is not None else None
        try:
            response = await self.service.send_prompt(
                user_id, prompt, file_context=file_context
            )
        except TelegramCoderError as exc:
            error = format_error("send prompt to OpenCode", exc)
            if status_id is None:
                await self._reply(msg, error)
            else:
                await self.bot.edit_message_text(
                    chat_id=msg.chat_id, message_id=status_id, text=error
                )
            return
        await self._show_response(msg.chat_id, status_id, response)

    async def _show_response(
        self, chat_id: int, status_id: int | None, response: str
    ) -> None:
        if status_id is not None and len(response) <= RESPONSE_CHUNK_LIMIT:
            text, entities = _rendered(response)
            await self.bot.edit_message_text(
                chat_id=chat_id, message_id=status_id, text=text, entities=entities
            )
            self.coordinator.schedule_delete(chat_id, status_id, self.delete_after_s)
            return
        if status_id is not None:
            self.coordinator.schedule_delete(
                chat_id, status_id, STATUS_DELETE_AFTER_CHUNKS_S
            )
        for chunk in split_into_chunks(response, RESPONSE_CHUNK_LIMIT):
            text, entities = _rendered(chunk)
            await self.bot.send_message(chat_id=chat_id, text=text, entities=entities)

    async def handle_esc(self, msg: TelegramIncomingMessage) -> None:
        try:
            stopped = await self.service.abort(_user(msg))
        except NoActiveSession as exc:
            await self._reply(msg, f"❌ {exc}")
            return
        if stopped:
            await self._reply(msg, "⏹️ Stopped the current operation.")
        else:
            await self._reply(msg, "⚠️ Failed to stop the current operation.")

    async def handle_agent(self, msg: TelegramIncomingMessage) -> None:
        user_id = _user(msg)
        if not self.service.has_session(user_id):
            await self._reply(msg, f"❌ {NoActiveSession()}")
            return
        result = await self.service.cycle_to_next_agent(user_id)
        if not result.success:
            await self._reply(msg, "⚠️ No other agents are available right now.")
            return
        agent = escape_markdown(result.agent or "")
        await self._reply_md(msg, f"🤖 Agent: **{agent}**")

    async def handle_rename(self, msg: TelegramIncomingMessage) -> None:
        title = msg.args
        if not title:
            await self._reply(msg, "❌ Please provide a title. Usage: /rename <title>")
            return
        try:
            await self.service.rename(_user(msg), title)
        except NoActiveSession as exc:
            await self._reply(msg, f"❌ {exc}")
            return
        except TelegramCoderError as exc:
            await self._reply(msg, format_error("rename session", exc))
            return
        await self._reply_md(
            msg, f"✅ Session renamed to: **{escape_markdown(title)}**"
        )

    async def handle_sessions(self, msg: TelegramIncomingMessage) -> None:
        try:
            sessions = await self.service.recent_sessions()
        except TelegramCoderError as exc:
            await self._reply(msg, format_error("list sessions", exc))
            return
        if not sessions:
            await self._reply(msg, "No sessions found.")
            return
        current = self.service.get_session(_user(msg))
        lines = ["📋 **Recent sessions:**", ""]
        for index, info in enumerate(sessions, start=1):
            title = escape_markdown(info.title or "(untitled)")
            marker = " ⬅️" if current and current.session_id == info.id else ""
            lines.append(f"{index}. {title} `{info.id}`{marker}")
        await self._reply_md(msg, "\n".join(lines))

    async def handle_end_session(self, msg: TelegramIncomingMessage) -> None:
        user_id = _user(msg)
        if not self.service.has_session(user_id):
            await self._reply(msg, "ℹ️ You don't have an active OpenCode session.")
            return
        if await self.service.end_session(user_id):
            await self._reply(msg, "✅ OpenCode session ended successfully.")
        else:
            await self._reply(
                msg, "⚠️ Failed to end session. It may have already been closed."
            )

    async def _reply(self, msg: TelegramIncomingMessage, text: str) -> None:
        sent = await self.bot.send_message(chat_id=msg.chat_id, text=text)
        if sent is not None:
            self.coordinator.schedule_delete(
                msg.chat_id, int(sent["message_id"]), self.delete_after_s
            )

    async def _reply_md(self, msg: TelegramIncomingMessage, md: str) -> None:
        await self.coordinator.send_ephemeral(
            msg.chat_id, md, delete_after_s=self.delete_after_s
        )

    async def close(self) -> None:
        await self.service.close()


def _user(msg: TelegramIncomingMessage) -> int:
    # Updates without a sender are rejected by the access gate.
    assert msg.sender is not None
    return msg.sender.id


async def run_opencode_bot(
    bot: BotClient,
    settings: Settings,
    *,
    client: OpenCodeClient,
    server: OpenCodeServer | None = None,
) -> int:
    """Poll updates until cancelled; return the process exit code."""
    killed = False
    me = await bot.get_me()
    logger.info(
        "bot.starting",
        username=(me or {}).get("username"),
        server_url=client.base_url,
    )
    try:
        async with anyio.create_task_group() as tg:

            def kill() -> None:
                nonlocal killed
                killed = True
                tg.cancel_scope.cancel()

            app = OpenCodeBot(
                bot, settings, tg, client=client, server=server, on_kill=kill
            )
            try:
                await app.set_commands()
                offset = await drain_backlog(bot)
                async for update in poll_incoming(bot, offset=offset):
                    tg.start_soon(app.handle_update, update)
            finally:
                with anyio.CancelScope(shield=True):
                    await app.close()
    finally:
        with anyio.CancelScope(shield=True):
            if server is not None:
                await server.stop()
            await client.close()
            await bot.close()
    logger.info("bot.stopped", killed=killed)
    return 1 if killed else 0
