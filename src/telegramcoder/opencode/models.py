"""Msgspec models for the OpenCode server API and its event stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeAlias

import msgspec


class Part(msgspec.Struct, forbid_unknown_fields=False):
    """One piece of a message: text, reasoning, tool call, step marker, ..."""

    type: str
    id: str | None = None
    sessionID: str | None = None
    messageID: str | None = None
    text: str | None = None
    tool: str | None = None
    state: dict[str, Any] | None = None


class Agent(msgspec.Struct, forbid_unknown_fields=False):
    name: str
    mode: str | None = None
    hidden: bool | None = None
    description: str | None = None


class SessionTime(msgspec.Struct, forbid_unknown_fields=False):
    created: float | None = None
    updated: float | None = None


class SessionInfo(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    title: str | None = None
    directory: str | None = None
    time: SessionTime | None = None


class PromptReply(msgspec.Struct, forbid_unknown_fields=False):
    info: dict[str, Any] | None = None
    parts: list[Part] = msgspec.field(default_factory=list)

    def text(self) -> str:
        return "\n".join(
            part.text for part in self.parts if part.type == "text" and part.text
        )


class FileContent(msgspec.Struct, forbid_unknown_fields=False):
    type: str = "text"
    content: str = ""


def _session_id_from(properties: dict[str, Any]) -> str | None:
    value = properties.get("sessionID")
    if isinstance(value, str):
        return value
    for key in ("info", "part"):
        nested = properties.get(key)
        if isinstance(nested, dict):
            value = nested.get("sessionID")
            if isinstance(value, str):
                return value
    return None


class _Event(msgspec.Struct, tag_field="type", forbid_unknown_fields=False):
    @property
    def kind(self) -> str:
        return type(self).__struct_config__.tag  # type: ignore[return-value]

    @property
    def session_id(self) -> str | None:
        return None

    def properties_dict(self) -> dict[str, Any]:
        props = getattr(self, "properties", None)
        if props is None:
            return {}
        built = msgspec.to_builtins(props)
        return built if isinstance(built, dict) else {}


class _PropsEvent(_Event):
    properties: dict[str, Any] = msgspec.field(default_factory=dict)

    @property
    def session_id(self) -> str | None:
        return _session_id_from(self.properties)


class PartUpdatedProperties(msgspec.Struct, forbid_unknown_fields=False):
    part: Part
    delta: str | None = None


class MessagePartUpdated(_Event, tag="message.part.updated"):
    properties: PartUpdatedProperties

    @property
    def session_id(self) -> str | None:
        return self.properties.part.sessionID


class SessionStatusValue(msgspec.Struct, forbid_unknown_fields=False):
    type: str


class SessionStatusProperties(msgspec.Struct, forbid_unknown_fields=False):
    status: SessionStatusValue
    sessionID: str | None = None


class SessionStatus(_Event, tag="session.status"):
    properties: SessionStatusProperties

    @property
    def session_id(self) -> str | None:
        return self.properties.sessionID


class SessionErrorProperties(msgspec.Struct, forbid_unknown_fields=False):
    sessionID: str | None = None
    error: dict[str, Any] | None = None


class SessionError(_Event, tag="session.error"):
    properties: SessionErrorProperties

    @property
    def session_id(self) -> str | None:
        return self.properties.sessionID

    def message(self) -> str:
        error = self.properties.error or {}
        data = error.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
        name = error.get("name")
        return name if isinstance(name, str) else "Unknown error"


class FileWatcherProperties(msgspec.Struct, forbid_unknown_fields=False):
    file: str
    event: str


class FileWatcherUpdated(_Event, tag="file.watcher.updated"):
    properties: FileWatcherProperties


class VersionProperties(msgspec.Struct, forbid_unknown_fields=False):
    version: str


class InstallationUpdateAvailable(_Event, tag="installation.update-available"):
    properties: VersionProperties


class PermissionProperties(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    title: str | None = None
    sessionID: str | None = None
    type: str | None = None


class PermissionUpdated(_Event, tag="permission.updated"):
    properties: PermissionProperties

    @property
    def session_id(self) -> str | None:
        return self.properties.sessionID


class PtyDeletedProperties(msgspec.Struct, forbid_unknown_fields=False):
    id: str


class PtyDeleted(_Event, tag="pty.deleted"):
    properties: PtyDeletedProperties


class DirectoryProperties(msgspec.Struct, forbid_unknown_fields=False):
    directory: str


class ServerInstanceDisposed(_Event, tag="server.instance.disposed"):
    properties: DirectoryProperties


class PromptAppendProperties(msgspec.Struct, forbid_unknown_fields=False):
    text: str


class TuiPromptAppend(_Event, tag="tui.prompt.append"):
    properties: PromptAppendProperties


class BranchProperties(msgspec.Struct, forbid_unknown_fields=False):
    branch: str | None = None


class VcsBranchUpdated(_Event, tag="vcs.branch.updated"):
    properties: BranchProperties


class MessageUpdated(_PropsEvent, tag="message.updated"):
    pass


class MessageRemoved(_PropsEvent, tag="message.removed"):
    pass


class MessagePartRemoved(_PropsEvent, tag="message.part.removed"):
    pass


class PermissionReplied(_PropsEvent, tag="permission.replied"):
    pass


class SessionIdle(_PropsEvent, tag="session.idle"):
    pass


class SessionCompacted(_PropsEvent, tag="session.compacted"):
    pass


class SessionCreated(_PropsEvent, tag="session.created"):
    pass


class SessionUpdated(_PropsEvent, tag="session.updated"):
    pass


class SessionDeleted(_PropsEvent, tag="session.deleted"):
    pass


class SessionDiff(_PropsEvent, tag="session.diff"):
    pass


class FileEdited(_PropsEvent, tag="file.edited"):
    pass


class TodoUpdated(_PropsEvent, tag="todo.updated"):
    pass


class CommandExecuted(_PropsEvent, tag="command.executed"):
    pass


class InstallationUpdated(_PropsEvent, tag="installation.updated"):
    pass


class LspClientDiagnostics(_PropsEvent, tag="lsp.client.diagnostics"):
    pass


class LspUpdated(_PropsEvent, tag="lsp.updated"):
    pass


class TuiCommandExecute(_PropsEvent, tag="tui.command.execute"):
    pass


class TuiToastShow(_PropsEvent, tag="tui.toast.show"):
    pass


class PtyCreated(_PropsEvent, tag="pty.created"):
    pass


class PtyUpdated(_PropsEvent, tag="pty.updated"):
    pass


class PtyExited(_PropsEvent, tag="pty.exited"):
    pass


class ServerConnected(_PropsEvent, tag="server.connected"):
    pass


OpenCodeEvent: TypeAlias = (
    MessageUpdated
    | MessageRemoved
    | MessagePartUpdated
    | MessagePartRemoved
    | PermissionUpdated
    | PermissionReplied
    | SessionStatus
    | SessionIdle
    | SessionCompacted
    | SessionError
    | SessionCreated
    | SessionUpdated
    | SessionDeleted
    | SessionDiff
    | FileEdited
    | FileWatcherUpdated
    | TodoUpdated
    | CommandExecuted
    | VcsBranchUpdated
    | InstallationUpdated
    | InstallationUpdateAvailable
    | LspClientDiagnostics
    | LspUpdated
    | TuiPromptAppend
    | TuiCommandExecute
    | TuiToastShow
    | PtyCreated
    | PtyUpdated
    | PtyExited
    | PtyDeleted
    | ServerInstanceDisposed
    | ServerConnected
)

EVENT_TYPES: dict[str, type[_Event]] = {
    cls.__struct_config__.tag: cls  # type: ignore[misc]
    for cls in OpenCodeEvent.__args__  # type: ignore[attr-defined]
}
KNOWN_EVENT_TYPES: frozenset[str] = frozenset(EVENT_TYPES)


@dataclass(frozen=True, slots=True)
class UnknownEvent:
    """An event whose type is not modelled, or whose payload did not validate."""

    kind: str
    properties: dict[str, Any] = field(default_factory=dict)
    raw: Any = None

    @property
    def session_id(self) -> str | None:
        return _session_id_from(self.properties)

    def properties_dict(self) -> dict[str, Any]:
        return self.properties


DecodedEvent: TypeAlias = OpenCodeEvent | UnknownEvent


def decode_event(data: str | bytes) -> DecodedEvent | None:
    """Decode one server-sent event payload; ``None`` for non-JSON data."""
    try:
        obj = msgspec.json.decode(data)
    except msgspec.DecodeError:
        return None
    if not isinstance(obj, dict):
        return UnknownEvent(kind="", raw=obj)
    kind = obj.get("type")
    properties = obj.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    if not isinstance(kind, str):
        return UnknownEvent(kind="", properties=properties, raw=obj)
    if kind not in KNOWN_EVENT_TYPES:
        return UnknownEvent(kind=kind, properties=properties, raw=obj)
    try:
        return msgspec.convert(obj, type=OpenCodeEvent)
    except msgspec.ValidationError:
        return UnknownEvent(kind=kind, properties=properties, raw=obj)
