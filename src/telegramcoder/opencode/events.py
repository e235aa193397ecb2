from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

import msgspec

from ..errors import HandlerFault
from ..logging import get_logger
from ..telegram.render import code_block, escape_markdown
from .coordinator import RenderCoordinator, StreamKind
from .models import (
    KNOWN_EVENT_TYPES,
    DecodedEvent,
    FileWatcherUpdated,
    InstallationUpdateAvailable,
    MessagePartUpdated,
    PermissionUpdated,
    PtyDeleted,
    ServerInstanceDisposed,
    SessionError,
    SessionStatus,
    TuiPromptAppend,
    UnknownEvent,
    VcsBranchUpdated,
)
from .sessions import Session

logger = get_logger(__name__)

UnhandledPolicy: TypeAlias = Literal["drop", "format"]

REASONING_LABEL = "Reasoning"
_STATUS_EMOJI = {"busy": "🟢", "idle": "⏸️"}


@dataclass(frozen=True, slots=True)
class EventContext:
    session: Session
    output: RenderCoordinator

    def key(self, kind: StreamKind) -> tuple[str, int, StreamKind]:
        return (self.session.session_id, self.session.chat_id, kind)


EventHandler: TypeAlias = Callable[[Any, EventContext], Awaitable[str | None]]


async def on_message_part_updated(
    event: MessagePartUpdated, ctx: EventContext
) -> str | None:
    part = event.properties.part
    if part.type == "reasoning":
        await ctx.output.update(
            ctx.key(StreamKind.REASONING), REASONING_LABEL, replace=False
        )
    elif part.type == "tool":
        if part.tool:
            await ctx.output.update(
                ctx.key(StreamKind.TOOL),
                f"🔧 {escape_markdown(part.tool)}",
                replace=False,
            )
        else:
            await ctx.output.touch(ctx.key(StreamKind.TOOL))
    elif part.type == "text" and part.text:
        await ctx.output.update(ctx.key(StreamKind.TEXT), part.text)
    return None


async def on_session_status(event: SessionStatus, ctx: EventContext) -> str | None:
    status = event.properties.status.type
    emoji = _STATUS_EMOJI.get(status, "🔄")
    return f"{emoji} **Session Status:** {escape_markdown(status)}"


async def on_session_error(event: SessionError, ctx: EventContext) -> str | None:
    return f"⚠️ **Session error:** {escape_markdown(event.message())}"


async def on_file_watcher_updated(
    event: FileWatcherUpdated, ctx: EventContext
) -> str | None:
    props = event.properties
    return (
        f"📂 **File watcher:** {escape_markdown(props.event)} "
        f"`{props.file.replace('`', '')}`"
    )


async def on_update_available(
    event: InstallationUpdateAvailable, ctx: EventContext
) -> str | None:
    return f"🔔 **Update available:** {escape_markdown(event.properties.version)}"


async def on_permission_updated(
    event: PermissionUpdated, ctx: EventContext
) -> str | None:
    props = event.properties
    title = escape_markdown(props.title or props.type or "permission request")
    return f"🔐 **Permission updated:** {title} (id={escape_markdown(props.id)})"


async def on_pty_deleted(event: PtyDeleted, ctx: EventContext) -> str | None:
    return f"🗑️ **PTY deleted:** {escape_markdown(event.properties.id)}"


async def on_instance_disposed(
    event: ServerInstanceDisposed, ctx: EventContext
) -> str | None:
    directory = escape_markdown(event.properties.directory)
    return f"🗑️ **Server instance disposed:** {directory}"


async def on_tui_prompt_append(event: TuiPromptAppend, ctx: EventContext) -> str | None:
    return f"🖊️ **TUI prompt append:** {escape_markdown(event.properties.text)}"


async def on_vcs_branch_updated(
    event: VcsBranchUpdated, ctx: EventContext
) -> str | None:
    branch = event.properties.branch or "(unknown)"
    return f"🌿 **VCS branch updated:** {escape_markdown(branch)}"


async def log_only(event: DecodedEvent, ctx: EventContext) -> str | None:
    logger.debug(
        "opencode.events.received",
        event_type=event.kind,
        session_id=ctx.session.session_id,
    )
    return None


FORMATTERS: dict[str, EventHandler] = {
    "message.part.updated": on_message_part_updated,
    "session.status": on_session_status,
    "session.error": on_session_error,
    "file.watcher.updated": on_file_watcher_updated,
    "installation.update-available": on_update_available,
    "permission.updated": on_permission_updated,
    "pty.deleted": on_pty_deleted,
    "server.instance.disposed": on_instance_disposed,
    "tui.prompt.append": on_tui_prompt_append,
    "vcs.branch.updated": on_vcs_branch_updated,
}


def default_handlers() -> dict[str, EventHandler]:
    handlers: dict[str, EventHandler] = {kind: log_only for kind in KNOWN_EVENT_TYPES}
    handlers.update(FORMATTERS)
    return handlers


def format_unhandled(event: DecodedEvent) -> str:
    props = msgspec.json.format(
        msgspec.json.encode(event.properties_dict()), indent=2
    ).decode()
    kind = event.kind or "(untyped)"
    return f"🔔 **Event:** {escape_markdown(kind)}\n{code_block(props)}"


class EventClassifier:
    """Route events to per-type handlers registered up front."""

    def __init__(
        self,
        handlers: Mapping[str, EventHandler] | None = None,
        *,
        unhandled: UnhandledPolicy = "drop",
    ) -> None:
        table = dict(default_handlers() if handlers is None else handlers)
        unknown = sorted(set(table) - KNOWN_EVENT_TYPES)
        if unknown:
            raise ValueError(f"handlers registered for unknown event types: {unknown}")
        if unhandled not in ("drop", "format"):
            raise ValueError(f"unknown unhandled-event policy {unhandled!r}")
        self._handlers = table
        self.unhandled = unhandled

    def handler_for(self, kind: str) -> EventHandler | None:
        return self._handlers.get(kind)

    async def dispatch(self, event: DecodedEvent, ctx: EventContext) -> str | None:
        handler = (
            None if isinstance(event, UnknownEvent) else self.handler_for(event.kind)
        )
        if handler is None:
            if self.unhandled == "format":
                return format_unhandled(event)
            logger.debug("opencode.events.dropped", event_type=event.kind)
            return None
        try:
            return await handler(event, ctx)
        except Exception as exc:
            fault = HandlerFault(event.kind, exc)
            logger.error(
                "opencode.events.handler_failed",
                event_type=event.kind,
                session_id=ctx.session.session_id,
                error=str(fault),
                error_type=exc.__class__.__name__,
                exc_info=exc,
            )
            return None
