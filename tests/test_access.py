import anyio
import pytest

from telegramcoder import access
from telegramcoder.access import AccessGate, auto_kill_text, denial_text
from telegramcoder.telegram.types import (
    TelegramCallbackQuery,
    TelegramIncomingMessage,
    TelegramSender,
)
from tests.telegram_fakes import FakeBot, settle

ADMIN = 1
ALLOWED = 42
STRANGER = 99


def _message(sender_id: int | None, text: str = "/opencode") -> TelegramIncomingMessage:
    sender = (
        None
        if sender_id is None
        else TelegramSender(id=sender_id, username="mallory", first_name="Mal")
    )
    return TelegramIncomingMessage(
        update_id=1, chat_id=sender_id or 5, message_id=1, text=text, sender=sender
    )


@pytest.mark.anyio
async def test_allowed_user_passes_silently(fake_bot: FakeBot) -> None:
    async with anyio.create_task_group() as tg:
        gate = AccessGate(
            fake_bot, tg, allowed_user_ids=[ALLOWED], admin_user_id=ADMIN
        )
        assert await gate.check(_message(ALLOWED))
        tg.cancel_scope.cancel()

    assert fake_bot.send_calls == []
    assert gate.is_allowed(ALLOWED)
    assert gate.is_admin(ADMIN)
    assert not gate.is_admin(ALLOWED)


@pytest.mark.anyio
async def test_denied_user_gets_reply_and_admin_one_notice(fake_bot: FakeBot) -> None:
    async with anyio.create_task_group() as tg:
        gate = AccessGate(
            fake_bot, tg, allowed_user_ids=[ALLOWED], admin_user_id=ADMIN
        )
        assert not await gate.check(_message(STRANGER, "/prompt rm -rf"))
        tg.cancel_scope.cancel()

    admin_calls = [c for c in fake_bot.send_calls if c["chat_id"] == ADMIN]
    user_calls = [c for c in fake_bot.send_calls if c["chat_id"] == STRANGER]
    assert len(admin_calls) == 1
    notice = admin_calls[0]["text"]
    assert "Unauthorized Access Attempt" in notice
    assert "@mallory" in notice
    assert "/prompt rm -rf" in notice
    assert [c["text"] for c in user_calls] == [denial_text(STRANGER)]


@pytest.mark.anyio
async def test_empty_allow_list_denies_everyone(fake_bot: FakeBot) -> None:
    async with anyio.create_task_group() as tg:
        gate = AccessGate(fake_bot, tg, allowed_user_ids=[])
        assert not await gate.check(_message(ALLOWED))
        tg.cancel_scope.cancel()

    assert fake_bot.sent_texts() == [denial_text(ALLOWED).strip()]


@pytest.mark.anyio
async def test_missing_sender_is_rejected(fake_bot: FakeBot) -> None:
    async with anyio.create_task_group() as tg:
        gate = AccessGate(fake_bot, tg, allowed_user_ids=[ALLOWED])
        assert not await gate.check(_message(None))
        tg.cancel_scope.cancel()

    assert fake_bot.sent_texts() == ["Unable to identify user. Please try again."]


@pytest.mark.anyio
async def test_denied_callback_is_answered(fake_bot: FakeBot) -> None:
    query = TelegramCallbackQuery(
        update_id=2,
        chat_id=STRANGER,
        message_id=3,
        callback_query_id="cb",
        data="stop_playlist:1",
        sender=TelegramSender(id=STRANGER),
    )
    async with anyio.create_task_group() as tg:
        gate = AccessGate(fake_bot, tg, allowed_user_ids=[ALLOWED])
        assert not await gate.check(query)
        tg.cancel_scope.cancel()

    assert [c["id"] for c in fake_bot.callback_calls] == ["cb"]


@pytest.mark.anyio
async def test_auto_kill_stops_worker(
    fake_bot: FakeBot, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(access, "AUTO_KILL_DELAY_S", 0)
    killed: list[bool] = []

    async with anyio.create_task_group() as tg:
        gate = AccessGate(
            fake_bot,
            tg,
            allowed_user_ids=[ALLOWED],
            auto_kill=True,
            on_kill=lambda: killed.append(True),
        )
        assert not await gate.check(_message(STRANGER))
        await settle()
        tg.cancel_scope.cancel()

    assert killed == [True]
    assert fake_bot.sent_texts() == [auto_kill_text(STRANGER).strip()]


@pytest.mark.anyio
async def test_download_notice_skips_admin(fake_bot: FakeBot) -> None:
    async with anyio.create_task_group() as tg:
        gate = AccessGate(
            fake_bot, tg, allowed_user_ids=[ADMIN, ALLOWED], admin_user_id=ADMIN
        )
        await gate.notify_download(TelegramSender(id=ADMIN), "https://youtu.be/x")
        await gate.notify_download(TelegramSender(id=ALLOWED), "https://youtu.be/y")
        tg.cancel_scope.cancel()

    assert len(fake_bot.send_calls) == 1
    assert "Download Request" in fake_bot.send_calls[0]["text"]
    assert "https://youtu.be/y" in fake_bot.send_calls[0]["text"]
