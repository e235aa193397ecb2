from collections.abc import Callable

import pytest

from telegramcoder.config import Settings, load_settings
from tests.telegram_fakes import FakeBot, FakeClock, FakeOpenCodeClient


@pytest.fixture
def fake_bot() -> FakeBot:
    return FakeBot()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_opencode() -> FakeOpenCodeClient:
    return FakeOpenCodeClient()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def _factory(**env: str) -> Settings:
        values = {"TELEGRAM_BOT_TOKENS": "123:abcDEF_ghij", "ALLOWED_USER_IDS": "42"}
        values.update(env)
        return load_settings(env=values)

    return _factory
