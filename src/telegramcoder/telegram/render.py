from __future__ import annotations

import re
from typing import Any

from markdown_it import MarkdownIt
from sulguk import transform_html

TELEGRAM_TEXT_LIMIT = 4096
RESPONSE_CHUNK_LIMIT = 4000

_MD_RENDERER = MarkdownIt("commonmark", {"html": False})
_BULLET_RE = re.compile(r"(?m)^(\s*)•")
_MD_SPECIAL_RE = re.compile(r"([\\`*_\[\]()#+\-.!|~>{}<])")


def render_markdown(md: str) -> tuple[str, list[dict[str, Any]]]:
    """Convert markdown into Telegram plain text plus message entities."""
    html = _MD_RENDERER.render(md or "")
    rendered = transform_html(html)
    text = _BULLET_RE.sub(r"\1-", rendered.text)
    entities = [dict(e) for e in rendered.entities]
    return text, entities


def escape_markdown(text: str) -> str:
    """Escape text so it renders literally inside a markdown template."""
    return _MD_SPECIAL_RE.sub(r"\\\1", text)


def code_block(text: str) -> str:
    fence = "```"
    while fence in text:
        fence += "`"
    return f"{fence}\n{text}\n{fence}"


def limit_to_last_lines(text: str, max_lines: int) -> str:
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[-max_lines:])


def trim_front(text: str, limit: int = TELEGRAM_TEXT_LIMIT) -> str:
    """Keep the tail of ``text`` so that it fits in ``limit`` characters."""
    if len(text) <= limit:
        return text
    return "…" + text[len(text) - limit + 1 :]


def split_into_chunks(text: str, limit: int = RESPONSE_CHUNK_LIMIT) -> list[str]:
    """Split on line breaks so every chunk is at most ``limit`` characters.

    Joining the chunks with ``"\\n"`` gives back the input, except where a single
    line is longer than ``limit`` and has to be cut mid-line.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if len(text) <= limit:
        return [text] if text else []

    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for line in text.split("\n"):
        pieces = [line[i : i + limit] for i in range(0, len(line), limit)] or [""]
        for piece in pieces:
            extra = len(piece) + (1 if current else 0)
            if current and size + extra > limit:
                chunks.append("\n".join(current))
                current, size = [], 0
                extra = len(piece)
            current.append(piece)
            size += extra
    if current:
        chunks.append("\n".join(current))
    return chunks


def shorten_path(path: str, max_length: int = 50) -> str:
    if len(path) <= max_length:
        return path
    parts = path.split("/")
    name = parts[-1]
    if len(name) + 4 >= max_length:
        return "…" + name[-(max_length - 1) :]
    head = parts[0] if len(parts) > 1 else ""
    short = f"{head}/…/{name}" if head else f"…/{name}"
    if len(short) <= max_length:
        return short
    return f"…/{name}"


def inline_keyboard(rows: list[list[tuple[str, str]]]) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": data} for label, data in row]
            for row in rows
        ]
    }
