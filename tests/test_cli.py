import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
from typer.testing import CliRunner

from telegramcoder import __version__, cli
from telegramcoder.config import ENV_FIELDS


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    for name in ENV_FIELDS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield tmp_path
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_version_flag() -> None:
    result = CliRunner().invoke(cli.create_app(), ["--version"])

    assert result.exit_code == 0
    assert result.output.strip() == __version__


def test_no_args_shows_help() -> None:
    result = CliRunner().invoke(cli.create_app(), [])

    assert "run" in result.output
    assert "youtube" in result.output


def test_run_without_tokens_fails(clean_env: Path) -> None:
    result = CliRunner().invoke(cli.create_app(), ["run"])

    assert result.exit_code == 1
    assert "error: No bot tokens found" in result.output


def test_token_index_out_of_range(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKENS", "111:aaa")

    result = CliRunner().invoke(cli.create_app(), ["run", "--token-index", "3"])

    assert result.exit_code == 1
    assert "index 3 is out of range" in result.output


def test_youtube_requires_yt_dlp(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKENS", "111:aaa")
    monkeypatch.setenv("YT_DLP_PATH", str(clean_env / "missing-yt-dlp"))

    result = CliRunner().invoke(cli.create_app(), ["youtube"])

    assert result.exit_code == 1
    assert "yt-dlp not found" in result.output


def test_run_passes_settings_to_bot(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKENS", "111:aaa,222:bbb")
    monkeypatch.setenv("OPENCODE_SERVER_URL", "http://127.0.0.1:5001")
    seen: dict[str, object] = {}

    async def fake_run(bot, settings, *, client, server=None) -> int:
        seen["url"] = client.base_url
        seen["server"] = server
        seen["token"] = bot._base
        await client.close()
        await bot.close()
        return 0

    monkeypatch.setattr(cli, "run_opencode_bot", fake_run)

    result = CliRunner().invoke(cli.create_app(), ["run", "--token-index", "1"])

    assert result.exit_code == 0
    assert seen["url"] == "http://127.0.0.1:5001"
    assert seen["server"] is not None
    assert str(seen["token"]).endswith("/bot222:bbb")
