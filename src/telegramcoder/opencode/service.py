from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import anyio
from anyio.abc import TaskGroup

from ..errors import (
    BackendError,
    BackendUnreachable,
    NoActiveSession,
    ServerStartFailed,
    SessionAlreadyActive,
)
from ..logging import get_logger
from .client import OpenCodeClient
from .coordinator import RenderCoordinator
from .events import EventClassifier, EventContext
from .models import Agent, SessionInfo
from .server import OpenCodeServer
from .sessions import (
    AgentCycleResult,
    Session,
    SessionRegistry,
    filter_selectable_agents,
    next_agent,
)

logger = get_logger(__name__)

NO_RESPONSE = "No response received"
STREAM_RETRY_DELAY_S = 2.0
STREAM_MAX_FAILURES = 5

StatusCallback = Callable[[str], Awaitable[None]]


def default_session_title(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"Telegram Session {now.isoformat(timespec='milliseconds')}"


class OpenCodeService:
    """Per-user OpenCode sessions and their event subscriptions."""

    def __init__(
        self,
        client: OpenCodeClient,
        coordinator: RenderCoordinator,
        task_group: TaskGroup,
        *,
        classifier: EventClassifier | None = None,
        server: OpenCodeServer | None = None,
        registry: SessionRegistry | None = None,
        notice_delete_after_s: float = 10.0,
        stream_retry_delay_s: float = STREAM_RETRY_DELAY_S,
    ) -> None:
        self.client = client
        self.coordinator = coordinator
        self.classifier = classifier or EventClassifier()
        self.server = server
        self.sessions = registry or SessionRegistry()
        self._tg = task_group
        self._notice_delete_after_s = notice_delete_after_s
        self._stream_retry_delay_s = stream_retry_delay_s
        self._streams: dict[int, anyio.CancelScope] = {}

    def get_session(self, user_id: int) -> Session | None:
        return self.sessions.get(user_id)

    def has_session(self, user_id: int) -> bool:
        return self.sessions.has(user_id)

    def require_session(self, user_id: int) -> Session:
        session = self.sessions.get(user_id)
        if session is None:
            raise NoActiveSession()
        return session

    async def create_session(
        self, user_id: int, chat_id: int, title: str | None = None
    ) -> Session:
        existing = self.sessions.get(user_id)
        if existing is not None:
            raise SessionAlreadyActive(existing.session_id)
        title = title or default_session_title()
        info = await self.client.create_session(title)
        session = Session(
            user_id=user_id,
            session_id=info.id,
            chat_id=chat_id,
            title=info.title or title,
        )
        self.sessions.add(session)
        logger.info(
            "opencode.session.created", user_id=user_id, session_id=session.session_id
        )
        return session

    async def open_session(
        self,
        user_id: int,
        chat_id: int,
        *,
        on_status: StatusCallback | None = None,
    ) -> Session:
        """Create a session, starting the local server once if it is down."""
        try:
            session = await self.create_session(user_id, chat_id)
        except BackendUnreachable:
            if self.server is None:
                raise
            if on_status is not None:
                await on_status("starting_server")
            result = await self.server.ensure_running()
            if not result.success:
                raise ServerStartFailed(result.message) from None
            if on_status is not None:
                await on_status("server_started")
            session = await self.create_session(user_id, chat_id)
        self.start_event_stream(user_id)
        return session

    async def end_session(self, user_id: int) -> bool:
        """Drop the user's session; ``False`` if the server refused the delete."""
        session = self.sessions.get(user_id)
        if session is None:
            return False
        self.stop_event_stream(user_id)
        await self.coordinator.close_session(session.session_id)
        self.sessions.remove(user_id)
        try:
            await self.client.delete_session(session.session_id)
        except (BackendError, BackendUnreachable) as exc:
            logger.warning(
                "opencode.session.delete_failed",
                user_id=user_id,
                session_id=session.session_id,
                error=str(exc),
            )
            return False
        logger.info(
            "opencode.session.ended", user_id=user_id, session_id=session.session_id
        )
        return True

    async def abort(self, user_id: int) -> bool:
        session = self.require_session(user_id)
        try:
            await self.client.abort_session(session.session_id)
        except (BackendError, BackendUnreachable) as exc:
            logger.warning(
                "opencode.session.abort_failed",
                session_id=session.session_id,
                error=str(exc),
            )
            return False
        return True

    async def rename(self, user_id: int, title: str) -> Session:
        session = self.require_session(user_id)
        await self.client.update_session_title(session.session_id, title)
        session.title = title
        logger.info(
            "opencode.session.renamed", session_id=session.session_id, title=title
        )
        return session

    async def send_prompt(
        self, user_id: int, text: str, file_context: str | None = None
    ) -> str:
        """Send ``text`` and return the reply's text parts joined by newlines."""
        session = self.require_session(user_id)
        prompt = f"{file_context}\n\n{text}" if file_context else text
        reply = await self.client.prompt(
            session.session_id, prompt, agent=session.agent
        )
        return reply.text() or NO_RESPONSE

    async def available_agents(self) -> list[Agent]:
        try:
            agents = await self.client.list_agents()
        except (BackendError, BackendUnreachable) as exc:
            logger.warning("opencode.agents.list_failed", error=str(exc))
            return []
        selectable = filter_selectable_agents(agents)
        logger.debug("opencode.agents", names=[agent.name for agent in selectable])
        return selectable

    async def cycle_to_next_agent(self, user_id: int) -> AgentCycleResult:
        session = self.sessions.get(user_id)
        if session is None:
            return AgentCycleResult(success=False)
        agents = await self.available_agents()
        chosen = next_agent(session.agent, agents)
        if chosen is None:
            logger.info("opencode.agents.none_available", user_id=user_id)
            return AgentCycleResult(success=False, previous=session.agent)
        previous, session.agent = session.agent, chosen
        logger.info(
            "opencode.agents.cycled", user_id=user_id, previous=previous, agent=chosen
        )
        return AgentCycleResult(
            success=True,
            agent=chosen,
            previous=previous,
            available=tuple(agent.name for agent in agents),
        )

    async def recent_sessions(self, limit: int = 5) -> list[SessionInfo]:
        sessions = await self.client.list_sessions()

        def updated(info: SessionInfo) -> float:
            if info.time is None:
                return 0.0
            return info.time.updated or info.time.created or 0.0

        return sorted(sessions, key=updated, reverse=True)[:limit]

    def start_event_stream(self, user_id: int) -> None:
        session = self.require_session(user_id)
        self.stop_event_stream(user_id)
        scope = anyio.CancelScope()
        self._streams[user_id] = scope
        self._tg.start_soon(self._run_event_stream, session, scope)

    def stop_event_stream(self, user_id: int) -> None:
        scope = self._streams.pop(user_id, None)
        if scope is not None:
            scope.cancel()

    def is_streaming(self, user_id: int) -> bool:
        return user_id in self._streams

    async def close(self) -> None:
        for user_id in list(self._streams):
            self.stop_event_stream(user_id)
        await self.coordinator.close()

    async def _run_event_stream(
        self, session: Session, scope: anyio.CancelScope
    ) -> None:
        ctx = EventContext(session=session, output=self.coordinator)
        failures = 0
        with scope:
            try:
                while failures < STREAM_MAX_FAILURES:
                    try:
                        async for event in self.client.iter_events():
                            failures = 0
                            owner = event.session_id
                            if owner is not None and owner != session.session_id:
                                continue
                            notice = await self.classifier.dispatch(event, ctx)
                            if notice:
                                await self.coordinator.send_ephemeral(
                                    session.chat_id,
                                    notice,
                                    delete_after_s=self._notice_delete_after_s,
                                )
                    except (BackendError, BackendUnreachable) as exc:
                        logger.warning(
                            "opencode.events.stream_failed",
                            session_id=session.session_id,
                            error=str(exc),
                        )
                    failures += 1
                    await anyio.sleep(self._stream_retry_delay_s)
                logger.error(
                    "opencode.events.gave_up",
                    session_id=session.session_id,
                    failures=failures,
                )
            finally:
                if self._streams.get(session.user_id) is scope:
                    del self._streams[session.user_id]
