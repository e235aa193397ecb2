from __future__ import annotations


class TelegramCoderError(RuntimeError):
    pass


class ConfigError(TelegramCoderError):
    pass


class NoActiveSession(TelegramCoderError):
    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "No active OpenCode session. Use /opencode to start a session first."
        )


class SessionAlreadyActive(TelegramCoderError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"You already have an active OpenCode session ({session_id}). "
            "Use /endsession to close it first."
        )
        self.session_id = session_id


class BackendUnreachable(TelegramCoderError):
    def __init__(self, base_url: str, detail: str | None = None) -> None:
        message = (
            f"Cannot connect to OpenCode server at {base_url}. Please ensure:\n"
            "1. OpenCode server is running (`opencode serve`)\n"
            "2. OPENCODE_SERVER_URL is configured correctly"
        )
        if detail:
            message = f"{message}\n\n{detail}"
        super().__init__(message)
        self.base_url = base_url
        self.detail = detail


class BackendError(TelegramCoderError):
    """The server answered, but not with what we asked for."""

    def __init__(self, operation: str, status: int | None, body: str = "") -> None:
        suffix = f" (HTTP {status})" if status is not None else ""
        text = f"OpenCode {operation} failed{suffix}"
        if body:
            text = f"{text}: {body[:300]}"
        super().__init__(text)
        self.operation = operation
        self.status = status


class ServerStartFailed(TelegramCoderError):
    pass


class RenderTargetGone(TelegramCoderError):
    def __init__(self, chat_id: int, message_id: int) -> None:
        super().__init__(f"message {message_id} in chat {chat_id} is gone")
        self.chat_id = chat_id
        self.message_id = message_id


class FileMentionNotFound(TelegramCoderError):
    def __init__(self, raw: str) -> None:
        super().__init__(f"No files found matching: {raw}")
        self.raw = raw


class AmbiguousFileMention(TelegramCoderError):
    def __init__(self, raw: str, candidates: list[str]) -> None:
        super().__init__(f"{len(candidates)} files match {raw}")
        self.raw = raw
        self.candidates = candidates


class FileMentionCancelled(TelegramCoderError):
    def __init__(self) -> None:
        super().__init__("File selection cancelled.")


class DownloadError(TelegramCoderError):
    """yt-dlp failed or produced no usable file."""


class HandlerFault(TelegramCoderError):
    def __init__(self, event_type: str, cause: BaseException) -> None:
        super().__init__(f"handler for {event_type} failed: {cause}")
        self.event_type = event_type
        self.cause = cause


def format_error(action: str, exc: BaseException | str) -> str:
    message = exc if isinstance(exc, str) else str(exc) or exc.__class__.__name__
    return f"❌ Failed to {action}.\n\nError: {message}"
