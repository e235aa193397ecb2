import logging
from collections.abc import Iterator

import pytest
import structlog

from telegramcoder.logging import (
    get_logger,
    redact_token,
    redact_token_processor,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_redacts_bot_token_in_url() -> None:
    url = "https://api.telegram.org/bot123456789:ABCdefGHI_jkl/sendMessage"

    assert redact_token(url) == "https://api.telegram.org/bot[REDACTED]/sendMessage"


def test_redacts_bare_token() -> None:
    redacted = redact_token("Token is 123456789:ABCDEFGHIJ_klmnop")

    assert "123456789" not in redacted
    assert "[REDACTED_TOKEN]" in redacted


def test_leaves_plain_text_alone() -> None:
    assert redact_token("session ses_1 at 12:30") == "session ses_1 at 12:30"


def test_processor_redacts_event_url_and_error() -> None:
    event = {
        "event": "failed bot1:abc",
        "url": "https://api.telegram.org/bot1:abc/getMe",
        "error": "bot1:abc refused",
        "other": "bot1:abc",
    }

    result = redact_token_processor(None, "info", event)

    assert result["event"] == "failed bot[REDACTED]"
    assert "bot1:abc" not in result["url"]
    assert result["error"] == "bot[REDACTED] refused"
    assert result["other"] == "bot1:abc"


def test_setup_logging_levels() -> None:
    setup_logging(debug=True)
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING

    setup_logging(debug=False)
    assert logging.getLogger().level == logging.INFO


def test_log_output_is_redacted(capsys) -> None:
    structlog.reset_defaults()
    setup_logging(debug=False)

    get_logger("tests").info("telegram.request", url="https://x/bot42:secret/getMe")

    out = capsys.readouterr().out
    assert "telegram.request" in out
    assert "bot42:secret" not in out
