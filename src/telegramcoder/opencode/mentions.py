from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

import anyio

from ..errors import (
    AmbiguousFileMention,
    BackendError,
    FileMentionCancelled,
    FileMentionNotFound,
)
from ..logging import get_logger
from ..telegram.client import BotClient
from ..telegram.render import code_block, inline_keyboard, render_markdown, shorten_path
from ..telegram.types import TelegramCallbackQuery
from .client import OpenCodeClient

logger = get_logger(__name__)

MENTION_RE = re.compile(r'(?<![\w@])@(?:"([^"]+)"|([^\s"]\S*))')
_TRAILING_PUNCT = ".,;:!?)]}'"

SELECT_PREFIX = "file:select:"
CANCEL_DATA = "file:cancel"
MAX_PICKER_OPTIONS = 10
PICKER_TIMEOUT_S = 300.0


@dataclass(frozen=True, slots=True)
class FileMention:
    raw: str
    query: str
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class FileMatch:
    path: str
    score: float


@dataclass(frozen=True, slots=True)
class ResolvedMention:
    mention: FileMention
    match: FileMatch
    content: str | None = None
    omitted: bool = False


def parse_mentions(text: str) -> list[FileMention]:
    """Find ``@path`` and ``@"quoted path"`` mentions, skipping email-like text."""
    mentions: list[FileMention] = []
    for match in MENTION_RE.finditer(text):
        start, end = match.span()
        quoted, bare = match.group(1), match.group(2)
        if quoted is not None:
            query = quoted
        else:
            query = bare.rstrip(_TRAILING_PUNCT)
            end -= len(bare) - len(query)
            if not query or "@" in query:
                continue
        if end < len(text) and text[end] == "@":
            continue
        mentions.append(
            FileMention(raw=text[start:end], query=query, start=start, end=end)
        )
    return mentions


class FileChooser(Protocol):
    async def choose(
        self, mention: FileMention, matches: list[FileMatch]
    ) -> FileMatch | None:
        """Return the chosen match, or ``None`` when the user cancels."""
        ...


class FileMentionResolver:
    def __init__(
        self,
        client: OpenCodeClient,
        *,
        max_results: int = 10,
        max_file_size: int = 100_000,
        include_content: bool = True,
    ) -> None:
        self._client = client
        self.max_results = max_results
        self.max_file_size = max_file_size
        self.include_content = include_content

    async def find(self, query: str) -> list[FileMatch]:
        paths = await self._client.find_files(query)
        # Results arrive sorted by relevance.
        return [
            FileMatch(path=path, score=round(1.0 - index * 0.1, 2))
            for index, path in enumerate(paths[: self.max_results])
        ]

    async def read(self, match: FileMatch) -> tuple[str | None, bool]:
        if not self.include_content:
            return None, False
        try:
            file = await self._client.read_file(match.path)
        except BackendError as exc:
            logger.warning("mentions.read_failed", path=match.path, error=str(exc))
            return None, False
        if len(file.content) > self.max_file_size:
            logger.info(
                "mentions.content_omitted",
                path=match.path,
                size=len(file.content),
                limit=self.max_file_size,
            )
            return None, True
        return file.content, False

    async def resolve(
        self, mentions: list[FileMention], chooser: FileChooser | None = None
    ) -> list[ResolvedMention]:
        """Pick one file per mention and load its content.

        Raises :class:`FileMentionNotFound` when a mention has no match and
        :class:`FileMentionCancelled` when the user backs out of a choice.
        """
        selected: list[tuple[FileMention, FileMatch]] = []
        for mention in mentions:
            matches = await self.find(mention.query)
            if not matches:
                raise FileMentionNotFound(mention.raw)
            if len(matches) == 1:
                selected.append((mention, matches[0]))
                continue
            if chooser is None:
                raise AmbiguousFileMention(mention.raw, [m.path for m in matches])
            chosen = await chooser.choose(mention, matches)
            if chosen is None:
                raise FileMentionCancelled()
            selected.append((mention, chosen))

        resolved = []
        for mention, match in selected:
            content, omitted = await self.read(match)
            resolved.append(
                ResolvedMention(
                    mention=mention, match=match, content=content, omitted=omitted
                )
            )
        return resolved


def format_file_context(resolved: list[ResolvedMention]) -> str:
    if not resolved:
        return ""
    blocks = ["📎 Referenced Files:"]
    for item in resolved:
        lines = [f"File: {item.match.path}"]
        if item.content is not None:
            lines.append(code_block(item.content))
        elif item.omitted:
            lines.append("(Content omitted: file too large)")
        else:
            lines.append("(Content not included)")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_prompt(text: str, file_context: str | None) -> str:
    if not file_context:
        return text
    return f"{file_context}\n\n{text}"


@dataclass(slots=True)
class _PendingChoice:
    matches: list[FileMatch]
    done: anyio.Event = field(default_factory=anyio.Event)
    result: FileMatch | None = None


class TelegramFilePicker:
    """Ask the user to pick a file with an inline keyboard."""

    def __init__(self, bot: BotClient, *, timeout_s: float = PICKER_TIMEOUT_S) -> None:
        self._bot = bot
        self._timeout_s = timeout_s
        self._pending: dict[tuple[int, int], _PendingChoice] = {}

    def for_chat(self, chat_id: int) -> FileChooser:
        return _ChatChooser(self, chat_id)

    async def choose(
        self, chat_id: int, mention: FileMention, matches: list[FileMatch]
    ) -> FileMatch | None:
        options = matches[:MAX_PICKER_OPTIONS]
        rows = [
            [(f"{i + 1}. {shorten_path(m.path)}", f"{SELECT_PREFIX}{i}")]
            for i, m in enumerate(options)
        ]
        rows.append([("❌ Cancel", CANCEL_DATA)])
        suffix = "es" if len(options) > 1 else ""
        text, entities = render_markdown(
            f"🔍 Found {len(options)} match{suffix} for "
            f"`{mention.raw.replace('`', '')}`:\n\nPlease select the correct file:"
        )
        sent = await self._bot.send_message(
            chat_id=chat_id,
            text=text,
            entities=entities,
            reply_markup=inline_keyboard(rows),
        )
        if sent is None:
            return None
        key = (chat_id, int(sent["message_id"]))
        pending = _PendingChoice(matches=options)
        self._pending[key] = pending
        try:
            with anyio.move_on_after(self._timeout_s):
                await pending.done.wait()
        finally:
            self._pending.pop(key, None)

        if pending.result is None:
            outcome = "❌ File selection cancelled"
            outcome_entities = None
        else:
            outcome, outcome_entities = render_markdown(
                f"✅ Selected: {code_block(pending.result.path)}"
            )
        await self._bot.edit_message_text(
            chat_id=key[0], message_id=key[1], text=outcome, entities=outcome_entities
        )
        return pending.result

    async def handle_callback(self, query: TelegramCallbackQuery) -> bool:
        """Resolve a waiting choice; ``False`` when the callback is not ours."""
        data = query.data or ""
        if not (data == CANCEL_DATA or data.startswith(SELECT_PREFIX)):
            return False
        pending = self._pending.get((query.chat_id, query.message_id))
        if pending is None:
            await self._bot.answer_callback_query(
                query.callback_query_id, text="This selection has expired."
            )
            return True
        if data == CANCEL_DATA:
            await self._bot.answer_callback_query(
                query.callback_query_id, text="Cancelled"
            )
            pending.done.set()
            return True
        try:
            index = int(data[len(SELECT_PREFIX) :])
            choice = pending.matches[index]
        except (ValueError, IndexError):
            await self._bot.answer_callback_query(
                query.callback_query_id, text="Unknown option"
            )
            return True
        await self._bot.answer_callback_query(query.callback_query_id)
        pending.result = choice
        pending.done.set()
        return True


@dataclass(frozen=True, slots=True)
class _ChatChooser:
    picker: TelegramFilePicker
    chat_id: int

    async def choose(
        self, mention: FileMention, matches: list[FileMatch]
    ) -> FileMatch | None:
        return await self.picker.choose(self.chat_id, mention, matches)
