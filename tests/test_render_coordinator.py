from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import anyio
import pytest

from telegramcoder.opencode.coordinator import (
    RenderCoordinator,
    RenderPolicy,
    StreamKind,
    prepare_content,
)
from tests.telegram_fakes import FakeBot, FakeClock, settle

CHAT_ID = 10
TEXT_KEY = ("ses_1", CHAT_ID, StreamKind.TEXT)
TOOL_KEY = ("ses_1", CHAT_ID, StreamKind.TOOL)


@asynccontextmanager
async def running(
    bot: FakeBot, clock: FakeClock, policy: RenderPolicy | None = None
) -> AsyncIterator[RenderCoordinator]:
    async with anyio.create_task_group() as tg:
        yield RenderCoordinator(
            bot, tg, policy=policy, clock=clock, sleep=clock.sleep
        )
        tg.cancel_scope.cancel()


@pytest.mark.anyio
async def test_burst_sends_one_message_and_flushes_latest(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        async with anyio.create_task_group() as burst:
            for index in range(5):
                burst.start_soon(coordinator.update, TEXT_KEY, f"chunk {index}")
        await settle()

        assert len(fake_bot.send_calls) == 1
        assert fake_bot.edit_calls == []

        await fake_clock.advance(1.0)

        assert len(fake_bot.send_calls) == 1
        assert len(fake_bot.edit_calls) == 1
        assert "chunk 4" in fake_bot.edit_calls[0]["text"]
        assert fake_bot.live_message_ids(CHAT_ID) == {1}


@pytest.mark.anyio
async def test_buffered_updates_converge_to_newest_content(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "a")
        await fake_clock.advance(0.3)
        await coordinator.update(TEXT_KEY, "ab")
        await fake_clock.advance(0.3)
        await coordinator.update(TEXT_KEY, "abc")
        await settle()
        assert fake_bot.edit_calls == []

        await fake_clock.advance(0.4)

        assert fake_bot.edited_texts() == ["abc"]
        state = coordinator.state(TEXT_KEY)
        assert state is not None
        assert state.pending is None


@pytest.mark.anyio
async def test_update_after_throttle_window_edits_immediately(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "first")
        await fake_clock.advance(1.5)
        await coordinator.update(TEXT_KEY, "second")

        assert fake_bot.edited_texts() == ["second"]
        assert fake_bot.edit_calls[0]["message_id"] == 1


@pytest.mark.anyio
async def test_inactivity_deletes_then_next_fragment_sends_fresh(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "hello")
        await settle()
        await fake_clock.advance(5.0)

        assert fake_bot.delete_calls == [(CHAT_ID, 1)]
        assert coordinator.message_id(TEXT_KEY) is None

        await coordinator.update(TEXT_KEY, "hello again")

        assert len(fake_bot.send_calls) == 2
        assert fake_bot.live_message_ids(CHAT_ID) == {2}


@pytest.mark.anyio
async def test_each_fragment_restarts_inactivity_timer(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "one")
        await settle()
        await fake_clock.advance(4.0)
        await coordinator.update(TEXT_KEY, "one two")
        await settle()
        await fake_clock.advance(4.0)

        assert fake_bot.delete_calls == []

        await fake_clock.advance(1.0)

        assert fake_bot.delete_calls == [(CHAT_ID, 1)]


@pytest.mark.anyio
async def test_failed_edit_replaces_message(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    fake_bot.fail_edits = True
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "a")
        await fake_clock.advance(1.5)
        await coordinator.update(TEXT_KEY, "ab")

        assert fake_bot.delete_calls == [(CHAT_ID, 1)]
        assert fake_bot.sent_texts() == ["a", "ab"]
        assert coordinator.message_id(TEXT_KEY) == 2
        assert fake_bot.live_message_ids(CHAT_ID) == {2}


@pytest.mark.anyio
async def test_close_session_turns_pending_timers_into_noops(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "a")
        await coordinator.update(TEXT_KEY, "ab")
        await settle()

        await coordinator.close_session("ses_1")
        await fake_clock.advance(10.0)

        assert fake_bot.delete_calls == [(CHAT_ID, 1)]
        assert fake_bot.edit_calls == []
        assert len(fake_bot.send_calls) == 1
        assert coordinator.state(TEXT_KEY) is None


@pytest.mark.anyio
async def test_touch_extends_displayed_message_only(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.touch(TOOL_KEY)
        assert fake_bot.send_calls == []

        await coordinator.update(TOOL_KEY, "🔧 bash", replace=False)
        await fake_clock.advance(2.0)
        await coordinator.touch(TOOL_KEY)
        await fake_clock.advance(2.0)
        assert fake_bot.delete_calls == []

        await fake_clock.advance(0.6)
        assert fake_bot.delete_calls == [(CHAT_ID, 1)]
        assert len(fake_bot.send_calls) == 1


@pytest.mark.anyio
async def test_send_finishing_after_close_is_deleted(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    fake_bot.fail_edits = True
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "a")
        await fake_clock.advance(0.3)
        await coordinator.update(TEXT_KEY, "ab")

        release = anyio.Event()
        fake_bot.send_gate = release
        await fake_clock.advance(0.7)
        assert fake_bot.delete_calls == [(CHAT_ID, 1)]

        await coordinator.close_session("ses_1")
        release.set()
        await settle()
        await fake_clock.advance(30.0)

        assert fake_bot.sent_texts() == ["a", "ab"]
        assert fake_bot.live_message_ids(CHAT_ID) == set()
        assert coordinator.state(TEXT_KEY) is None


@pytest.mark.anyio
async def test_status_kinds_keep_text_and_expire_sooner(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TOOL_KEY, "🔧 bash", replace=False)
        await fake_clock.advance(1.5)
        await coordinator.update(TOOL_KEY, "🔧 read", replace=False)
        await settle()

        assert fake_bot.sent_texts() == ["🔧 bash"]
        assert fake_bot.edit_calls == []

        await fake_clock.advance(2.5)

        assert fake_bot.delete_calls == [(CHAT_ID, 1)]


@pytest.mark.anyio
async def test_sessions_and_kinds_render_separately(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "text")
        await coordinator.update(TOOL_KEY, "tool", replace=False)
        await coordinator.update(("ses_2", CHAT_ID, StreamKind.TEXT), "other")

        assert len(fake_bot.send_calls) == 3
        await coordinator.close_session("ses_1")
        assert fake_bot.live_message_ids(CHAT_ID) == {3}


@pytest.mark.anyio
async def test_blank_content_is_ignored(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        await coordinator.update(TEXT_KEY, "   \n")

        assert fake_bot.send_calls == []
        assert coordinator.state(TEXT_KEY) is None


@pytest.mark.anyio
async def test_ephemeral_message_deletes_itself(
    fake_bot: FakeBot, fake_clock: FakeClock
) -> None:
    async with running(fake_bot, fake_clock) as coordinator:
        message_id = await coordinator.send_ephemeral(
            CHAT_ID, "**note**", delete_after_s=3.0
        )
        await settle()
        assert fake_bot.sent_texts() == ["note"]
        assert fake_bot.send_calls[0]["entities"]

        await fake_clock.advance(3.0)

        assert fake_bot.delete_calls == [(CHAT_ID, message_id)]


def test_prepare_content_keeps_last_lines() -> None:
    content = "\n\n".join(f"line {index}" for index in range(100))
    text, _ = prepare_content(content, RenderPolicy(max_lines=50))

    assert "line 99" in text
    assert "line 75" in text
    assert "line 49" not in text


def test_prepare_content_fits_message_limit() -> None:
    text, _ = prepare_content("x" * 10_000, RenderPolicy(max_chars=4096))

    assert len(text) <= 4096
    assert text.endswith("x")
