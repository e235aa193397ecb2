from __future__ import annotations

from .client import OpenCodeClient, iter_sse_data
from .coordinator import RenderCoordinator, RenderPolicy, StreamKind
from .events import EventClassifier, EventContext
from .mentions import FileMentionResolver, TelegramFilePicker, parse_mentions
from .models import decode_event
from .server import OpenCodeServer, ServerStartResult
from .service import OpenCodeService
from .sessions import Session, SessionRegistry

__all__ = [
    "EventClassifier",
    "EventContext",
    "FileMentionResolver",
    "OpenCodeClient",
    "OpenCodeServer",
    "OpenCodeService",
    "RenderCoordinator",
    "RenderPolicy",
    "ServerStartResult",
    "Session",
    "SessionRegistry",
    "StreamKind",
    "TelegramFilePicker",
    "decode_event",
    "iter_sse_data",
    "parse_mentions",
]
