from __future__ import annotations

from collections.abc import Awaitable, Callable
from functools import partial

import anyio
import typer

from . import __version__
from .bot import run_opencode_bot
from .config import Settings, load_settings
from .errors import ConfigError, DownloadError
from .logging import get_logger, setup_logging
from .opencode.client import OpenCodeClient
from .opencode.server import OpenCodeServer
from .telegram.client import TelegramClient
from .youtube.bot import run_youtube_bot
from .youtube.service import YouTubeService

logger = get_logger(__name__)


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def _load_settings_or_exit() -> Settings:
    try:
        return load_settings()
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e


def _token_or_exit(settings: Settings, index: int) -> str:
    try:
        return settings.bot_token(index)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e


def _run_until_done(fn: Callable[[], Awaitable[int]]) -> None:
    try:
        code = anyio.run(fn)
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130) from None
    if code:
        raise typer.Exit(code=code)


_DEBUG_OPTION = typer.Option(
    False,
    "--debug/--no-debug",
    help="Log Telegram requests, server events and rendered messages.",
)
_TOKEN_INDEX_OPTION = typer.Option(
    0,
    "--token-index",
    min=0,
    help="Which of the comma separated TELEGRAM_BOT_TOKENS to use.",
)


def run(
    debug: bool = _DEBUG_OPTION,
    token_index: int = _TOKEN_INDEX_OPTION,
) -> None:
    """Run the OpenCode bot."""
    setup_logging(debug=debug)
    settings = _load_settings_or_exit()
    token = _token_or_exit(settings, token_index)

    bot = TelegramClient(token)
    client = OpenCodeClient(settings.opencode_server_url)
    server = OpenCodeServer(
        client, startup_timeout_s=settings.opencode_startup_timeout_s
    )
    _run_until_done(
        partial(run_opencode_bot, bot, settings, client=client, server=server)
    )


def youtube(
    debug: bool = _DEBUG_OPTION,
    token_index: int = _TOKEN_INDEX_OPTION,
) -> None:
    """Run the YouTube audio download bot."""
    setup_logging(debug=debug)
    settings = _load_settings_or_exit()
    token = _token_or_exit(settings, token_index)

    service = YouTubeService(
        settings.yt_dlp_path, max_file_mb=settings.youtube_max_file_mb
    )
    try:
        service.verify()
    except DownloadError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    bot = TelegramClient(token)
    _run_until_done(partial(run_youtube_bot, bot, settings, service=service))


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Telegram bots for OpenCode and YouTube audio."""


def create_app() -> typer.Typer:
    app = typer.Typer(
        add_completion=False,
        no_args_is_help=True,
        help="Telegram bots for OpenCode and YouTube audio.",
    )
    app.callback()(app_main)
    app.command(name="run")(run)
    app.command(name="youtube")(youtube)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
