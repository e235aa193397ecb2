"""Turn bursts of streamed fragments into a few sent, edited and deleted messages.

Each (session id, chat id, stream kind) key owns one :class:`RenderState`:

* EMPTY (no message id): the next fragment is sent as a new message.
* DISPLAYED: a fragment arriving at least ``throttle_s`` after the last visible
  update edits the message in place; anything sooner is buffered and a single
  delayed flush shows the newest buffered content.
* Every fragment restarts the inactivity timer; when it fires the message is
  deleted and the key returns to EMPTY.

If an edit fails the message is assumed gone and a new one is sent instead.
"""

from __future__ import annotations

import enum
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias

import anyio
from anyio.abc import TaskGroup

from ..errors import RenderTargetGone
from ..logging import get_logger
from ..telegram.client import BotClient
from ..telegram.render import (
    TELEGRAM_TEXT_LIMIT,
    limit_to_last_lines,
    render_markdown,
    trim_front,
)

logger = get_logger(__name__)


class StreamKind(str, enum.Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL = "tool"


RenderKey: TypeAlias = tuple[str, int, StreamKind]


@dataclass(frozen=True, slots=True)
class RenderPolicy:
    throttle_s: float = 1.0
    text_delete_after_s: float = 5.0
    status_delete_after_s: float = 2.5
    max_lines: int = 50
    max_chars: int = TELEGRAM_TEXT_LIMIT

    def delete_after(self, kind: StreamKind) -> float:
        if kind is StreamKind.TEXT:
            return self.text_delete_after_s
        return self.status_delete_after_s


@dataclass(slots=True)
class RenderState:
    message_id: int | None = None
    last_update_at: float = 0.0
    shown: str | None = None
    pending: str | None = None
    flush_scope: anyio.CancelScope | None = None
    delete_scope: anyio.CancelScope | None = None
    closed: bool = False
    lock: anyio.Lock = field(default_factory=anyio.Lock)

    def cancel_timers(self) -> None:
        if self.flush_scope is not None:
            self.flush_scope.cancel()
            self.flush_scope = None
        if self.delete_scope is not None:
            self.delete_scope.cancel()
            self.delete_scope = None


def prepare_content(
    content: str, policy: RenderPolicy
) -> tuple[str, list[dict[str, Any]] | None]:
    md = trim_front(limit_to_last_lines(content, policy.max_lines), policy.max_chars)
    text, entities = render_markdown(md)
    if not text.strip():
        return md, None
    if len(text) > policy.max_chars:
        return trim_front(md, policy.max_chars), None
    return text, entities


class RenderCoordinator:
    def __init__(
        self,
        bot: BotClient,
        task_group: TaskGroup,
        *,
        policy: RenderPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._bot = bot
        self._tg = task_group
        self.policy = policy or RenderPolicy()
        self._clock = clock
        self._sleep = sleep
        self._states: dict[RenderKey, RenderState] = {}

    def state(self, key: RenderKey) -> RenderState | None:
        return self._states.get(key)

    def message_id(self, key: RenderKey) -> int | None:
        state = self._states.get(key)
        return state.message_id if state is not None else None

    async def update(
        self, key: RenderKey, content: str, *, replace: bool = True
    ) -> None:
        """Show ``content`` for ``key``.

        With ``replace=False`` an already displayed message keeps its text and
        only its inactivity timer is restarted.
        """
        if not content.strip():
            return
        state = self._states.get(key)
        if state is None:
            state = RenderState()
            self._states[key] = state

        async with state.lock:
            if state.closed:
                return
            if state.delete_scope is not None:
                state.delete_scope.cancel()
                state.delete_scope = None

            if state.message_id is None:
                await self._send(key, state, content)
            elif replace:
                elapsed = self._clock() - state.last_update_at
                if elapsed >= self.policy.throttle_s:
                    if state.flush_scope is not None:
                        state.flush_scope.cancel()
                        state.flush_scope = None
                    state.pending = None
                    await self._edit(key, state, content)
                else:
                    state.pending = content
                    if state.flush_scope is None:
                        self._schedule_flush(
                            key, state, self.policy.throttle_s - elapsed
                        )

            if state.message_id is not None and not state.closed:
                self._schedule_delete(key, state)

    async def touch(self, key: RenderKey) -> None:
        """Restart the inactivity timer of a displayed message."""
        state = self._states.get(key)
        if state is None:
            return
        async with state.lock:
            if state.closed or state.message_id is None:
                return
            if state.delete_scope is not None:
                state.delete_scope.cancel()
            self._schedule_delete(key, state)

    async def close_session(
        self, session_id: str, *, delete_messages: bool = True
    ) -> None:
        """Forget every key of ``session_id``; pending timers become no-ops."""
        keys = [key for key in self._states if key[0] == session_id]
        for key in keys:
            state = self._states.pop(key)
            state.closed = True
            state.cancel_timers()
            message_id = state.message_id
            state.message_id = None
            if delete_messages and message_id is not None:
                await self._bot.delete_message(chat_id=key[1], message_id=message_id)

    async def close(self) -> None:
        for session_id in {key[0] for key in self._states}:
            await self.close_session(session_id)

    async def _send(self, key: RenderKey, state: RenderState, content: str) -> None:
        text, entities = prepare_content(content, self.policy)
        sent = await self._bot.send_message(
            chat_id=key[1],
            text=text,
            entities=entities,
            disable_notification=True,
        )
        state.last_update_at = self._clock()
        state.pending = None
        if sent is None:
            logger.warning("render.send_failed", session_id=key[0], kind=key[2].value)
            return
        if state.closed:
            # The session ended while the send was in flight.
            await self._bot.delete_message(
                chat_id=key[1], message_id=int(sent["message_id"])
            )
            return
        state.message_id = int(sent["message_id"])
        state.shown = text
        logger.debug(
            "render.sent",
            session_id=key[0],
            kind=key[2].value,
            message_id=state.message_id,
        )

    async def _edit_in_place(
        self, key: RenderKey, message_id: int, text: str, entities: list[dict] | None
    ) -> None:
        edited = await self._bot.edit_message_text(
            chat_id=key[1],
            message_id=message_id,
            text=text,
            entities=entities,
        )
        if edited is None:
            raise RenderTargetGone(key[1], message_id)

    async def _edit(self, key: RenderKey, state: RenderState, content: str) -> None:
        text, entities = prepare_content(content, self.policy)
        state.last_update_at = self._clock()
        if text == state.shown or state.message_id is None:
            return
        try:
            await self._edit_in_place(key, state.message_id, text, entities)
        except RenderTargetGone as exc:
            logger.info(
                "render.edit_failed",
                session_id=key[0],
                kind=key[2].value,
                message_id=exc.message_id,
            )
            await self._bot.delete_message(chat_id=key[1], message_id=exc.message_id)
            state.message_id = None
            state.shown = None
            await self._send(key, state, content)
            return
        state.shown = text

    def _schedule_flush(self, key: RenderKey, state: RenderState, delay: float) -> None:
        scope = anyio.CancelScope()
        state.flush_scope = scope
        self._tg.start_soon(self._flush_later, key, state, scope, max(0.0, delay))

    def _schedule_delete(self, key: RenderKey, state: RenderState) -> None:
        scope = anyio.CancelScope()
        state.delete_scope = scope
        self._tg.start_soon(
            self._delete_later, key, state, scope, self.policy.delete_after(key[2])
        )

    async def _flush_later(
        self, key: RenderKey, state: RenderState, scope: anyio.CancelScope, delay: float
    ) -> None:
        with scope:
            await self._sleep(delay)
            async with state.lock:
                if state.flush_scope is scope:
                    state.flush_scope = None
                if state.closed or state.pending is None:
                    return
                content = state.pending
                state.pending = None
                if state.message_id is None:
                    await self._send(key, state, content)
                    if state.message_id is not None and state.delete_scope is None:
                        self._schedule_delete(key, state)
                else:
                    await self._edit(key, state, content)

    async def _delete_later(
        self, key: RenderKey, state: RenderState, scope: anyio.CancelScope, delay: float
    ) -> None:
        with scope:
            await self._sleep(delay)
            async with state.lock:
                if state.delete_scope is scope:
                    state.delete_scope = None
                if state.closed or state.message_id is None:
                    return
                if state.flush_scope is not None:
                    state.flush_scope.cancel()
                    state.flush_scope = None
                message_id = state.message_id
                state.message_id = None
                state.shown = None
                state.pending = None
                await self._bot.delete_message(chat_id=key[1], message_id=message_id)
                logger.debug(
                    "render.deleted",
                    session_id=key[0],
                    kind=key[2].value,
                    message_id=message_id,
                )

    async def send_ephemeral(
        self,
        chat_id: int,
        md: str,
        *,
        delete_after_s: float,
        reply_to_message_id: int | None = None,
    ) -> int | None:
        """Send a one-off message that deletes itself after ``delete_after_s``."""
        text, entities = render_markdown(md)
        sent = await self._bot.send_message(
            chat_id=chat_id,
            text=text,
            entities=entities,
            reply_to_message_id=reply_to_message_id,
        )
        if sent is None:
            return None
        message_id = int(sent["message_id"])
        self.schedule_delete(chat_id, message_id, delete_after_s)
        return message_id

    def schedule_delete(self, chat_id: int, message_id: int, delay_s: float) -> None:
        if delay_s <= 0:
            return
        self._tg.start_soon(self._delete_message_later, chat_id, message_id, delay_s)

    async def _delete_message_later(
        self, chat_id: int, message_id: int, delay_s: float
    ) -> None:
        await self._sleep(delay_s)
        await self._bot.delete_message(chat_id=chat_id, message_id=message_id)
