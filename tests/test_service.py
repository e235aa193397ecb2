from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import anyio
import pytest

from telegramcoder.errors import (
    BackendUnreachable,
    NoActiveSession,
    ServerStartFailed,
    SessionAlreadyActive,
)
from telegramcoder.opencode.coordinator import RenderCoordinator
from telegramcoder.opencode.models import (
    Agent,
    MessagePartUpdated,
    Part,
    PartUpdatedProperties,
    SessionInfo,
    SessionStatus,
    SessionStatusProperties,
    SessionStatusValue,
    SessionTime,
)
from telegramcoder.opencode.server import ServerStartResult
from telegramcoder.opencode.service import (
    NO_RESPONSE,
    OpenCodeService,
    default_session_title,
)
from tests.telegram_fakes import FakeBot, FakeClock, FakeOpenCodeClient, settle

USER = 42


class FakeServer:
    def __init__(self, client: FakeOpenCodeClient, *, success: bool = True) -> None:
        self.client = client
        self.success = success
        self.calls = 0

    async def ensure_running(self) -> ServerStartResult:
        self.calls += 1
        if not self.success:
            return ServerStartResult(success=False, message="opencode exploded")
        self.client.reachable = True
        return ServerStartResult(success=True, message="started", started=True)


@asynccontextmanager
async def running(
    bot: FakeBot,
    clock: FakeClock,
    client: FakeOpenCodeClient,
    server: FakeServer | None = None,
) -> AsyncIterator[OpenCodeService]:
    async with anyio.create_task_group() as tg:
        coordinator = RenderCoordinator(bot, tg, clock=clock, sleep=clock.sleep)
        yield OpenCodeService(
            client,  # type: ignore[arg-type]
            coordinator,
            tg,
            server=server,  # type: ignore[arg-type]
        )
        tg.cancel_scope.cancel()


def _text_event(session_id: str, text: str) -> MessagePartUpdated:
    return MessagePartUpdated(
        properties=PartUpdatedProperties(
            part=Part(type="text", text=text, sessionID=session_id)
        )
    )


def _status_event(session_id: str, status: str) -> SessionStatus:
    return SessionStatus(
        properties=SessionStatusProperties(
            status=SessionStatusValue(type=status), sessionID=session_id
        )
    )


def test_default_session_title() -> None:
    now = datetime(2024, 5, 1, 12, 30, 0, 123000, tzinfo=timezone.utc)

    assert default_session_title(now) == (
        "Telegram Session 2024-05-01T12:30:00.123+00:00"
    )


@pytest.mark.anyio
async def test_one_session_per_user(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        session = await service.create_session(USER, 100)
        assert session.session_id == "ses_1"
        assert session.agent == "build"
        assert session.title is not None
        assert session.title.startswith("Telegram Session ")

        with pytest.raises(SessionAlreadyActive, match="ses_1"):
            await service.create_session(USER, 100)

        other = await service.create_session(7, 700)
        assert other.session_id == "ses_2"


@pytest.mark.anyio
async def test_send_prompt_without_session(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        with pytest.raises(NoActiveSession, match="/opencode"):
            await service.send_prompt(USER, "hi")

    assert fake_opencode.calls == []


@pytest.mark.anyio
async def test_send_prompt_joins_text_parts(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.reply_parts = [
        Part(type="reasoning", text="thinking"),
        Part(type="text", text="line one"),
        Part(type="text", text="line two"),
    ]
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        session = await service.create_session(USER, 100)
        session.agent = "plan"

        reply = await service.send_prompt(USER, "do it", file_context="CTX")

    assert reply == "line one\nline two"
    assert fake_opencode.calls[-1] == ("prompt", ("ses_1", "CTX\n\ndo it", "plan"))


@pytest.mark.anyio
async def test_send_prompt_without_text_parts(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.reply_parts = [Part(type="tool", tool="bash")]
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        await service.create_session(USER, 100)

        assert await service.send_prompt(USER, "hi") == NO_RESPONSE


@pytest.mark.anyio
async def test_open_session_starts_server_once(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.reachable = False
    server = FakeServer(fake_opencode)
    stages: list[str] = []

    async def on_status(stage: str) -> None:
        stages.append(stage)

    async with running(fake_bot, fake_clock, fake_opencode, server) as service:
        session = await service.open_session(USER, 100, on_status=on_status)
        await settle()

        assert session.session_id == "ses_1"
        assert stages == ["starting_server", "server_started"]
        assert server.calls == 1
        assert service.is_streaming(USER)


@pytest.mark.anyio
async def test_open_session_reports_failed_start(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.reachable = False
    server = FakeServer(fake_opencode, success=False)

    async with running(fake_bot, fake_clock, fake_opencode, server) as service:
        with pytest.raises(ServerStartFailed, match="opencode exploded"):
            await service.open_session(USER, 100)
        assert not service.has_session(USER)


@pytest.mark.anyio
async def test_open_session_without_server_propagates(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.reachable = False

    async with running(fake_bot, fake_clock, fake_opencode) as service:
        with pytest.raises(BackendUnreachable):
            await service.open_session(USER, 100)


@pytest.mark.anyio
async def test_end_session_cleans_up(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        await service.open_session(USER, 100)
        await settle()

        assert await service.end_session(USER) is True
        assert not service.has_session(USER)
        assert not service.is_streaming(USER)
        assert ("delete_session", "ses_1") in fake_opencode.calls
        assert await service.end_session(USER) is False


@pytest.mark.anyio
async def test_end_session_forgets_locally_when_server_fails(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        await service.create_session(USER, 100)
        fake_opencode.reachable = False

        assert await service.end_session(USER) is False
        assert not service.has_session(USER)


@pytest.mark.anyio
async def test_abort_and_rename(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        with pytest.raises(NoActiveSession):
            await service.abort(USER)

        await service.create_session(USER, 100)
        assert await service.abort(USER) is True

        session = await service.rename(USER, "Refactor")
        assert session.title == "Refactor"
        assert ("update_session_title", ("ses_1", "Refactor")) in fake_opencode.calls

        fake_opencode.reachable = False
        assert await service.abort(USER) is False


@pytest.mark.anyio
async def test_cycle_agent(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.agents = [
        Agent(name="build", mode="primary"),
        Agent(name="general", mode="subagent"),
        Agent(name="plan", mode="primary"),
    ]
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        assert not (await service.cycle_to_next_agent(USER)).success

        await service.create_session(USER, 100)
        first = await service.cycle_to_next_agent(USER)
        assert first.success
        assert (first.previous, first.agent) == ("build", "plan")
        assert first.available == ("build", "plan")

        second = await service.cycle_to_next_agent(USER)
        assert second.agent == "build"

        fake_opencode.reachable = False
        failed = await service.cycle_to_next_agent(USER)
        assert not failed.success
        assert service.require_session(USER).agent == "build"


@pytest.mark.anyio
async def test_recent_sessions_sorted_by_update(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.sessions = [
        SessionInfo(id=f"ses_{index}", time=SessionTime(updated=float(updated)))
        for index, updated in enumerate([5, 50, 1, 30, 20, 40])
    ]
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        recent = await service.recent_sessions(limit=3)

    assert [info.id for info in recent] == ["ses_1", "ses_5", "ses_3"]


@pytest.mark.anyio
async def test_event_stream_renders_own_session_only(
    fake_bot: FakeBot, fake_clock: FakeClock, fake_opencode: FakeOpenCodeClient
) -> None:
    fake_opencode.events = [
        _text_event("ses_other", "not mine"),
        _text_event("ses_1", "Working on it"),
        _status_event("ses_1", "busy"),
    ]
    async with running(fake_bot, fake_clock, fake_opencode) as service:
        await service.open_session(USER, 100)
        await settle()

        texts = fake_bot.sent_texts()
        assert "Working on it" in texts
        assert "🟢 Session Status: busy" in texts
        assert all("not mine" not in text for text in texts)

        await service.close()
        await settle()
        assert not service.is_streaming(USER)
