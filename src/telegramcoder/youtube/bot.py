from __future__ import annotations

from pathlib import Path

import anyio
from anyio.abc import TaskGroup

from ..access import AccessGate
from ..config import Settings
from ..errors import TelegramCoderError, format_error
from ..logging import get_logger
from ..telegram.client import BotClient
from ..telegram.parsing import drain_backlog, poll_incoming
from ..telegram.render import inline_keyboard
from ..telegram.types import (
    TelegramCallbackQuery,
    TelegramIncomingMessage,
    TelegramIncomingUpdate,
)
from .service import (
    DownloadJobRegistry,
    PlaylistResult,
    YouTubeService,
    extract_youtube_urls,
    is_playlist_url,
    prepare_media_dir,
)

logger = get_logger(__name__)

STOP_PREFIX = "stop_playlist:"

HELP_TEXT = "\n".join(
    [
        "👋 Welcome to YouTube Audio Download Bot!",
        "",
        "Available commands:",
        "/start - Show this help message",
        "/help - Show this help message",
        "",
        "📥 Single Videos:",
        "Send me a YouTube video URL and I'll download the audio as MP3!",
        "",
        "📋 Playlists:",
        "Send me a playlist URL and I'll download up to {max_videos} videos "
        "sequentially.",
        "",
        "✨ Features:",
        "- Automatic quality optimization (max {max_mb}MB per file)",
        "- Progress updates for playlists",
        "- Error resilience: failed videos won't stop the playlist",
        "",
        "🎵 Just send me a YouTube URL to get started!",
    ]
)


def playlist_summary(result: PlaylistResult, *, cancelled: bool) -> str:
    if cancelled:
        return "\n".join(
            [
                "🛑 Playlist download stopped by user.",
                "",
                "📊 Summary:",
                f"   ✅ Downloaded: {result.downloaded}",
                f"   ❌ Failed: {result.failed}",
                f"   ⏹️ Skipped: {result.skipped}",
                f"   📝 Total: {result.total}",
            ]
        )
    return "\n".join(
        [
            "✅ Playlist download complete!",
            "",
            "📊 Summary:",
            f"   ✅ Downloaded: {result.downloaded}",
            f"   ❌ Failed: {result.failed}",
            f"   📝 Total: {result.total}",
        ]
    )


class YouTubeBot:
    def __init__(
        self,
        bot: BotClient,
        settings: Settings,
        task_group: TaskGroup,
        *,
        service: YouTubeService,
        gate: AccessGate,
    ) -> None:
        self.bot = bot
        self.settings = settings
        self.service = service
        self.gate = gate
        self.jobs = DownloadJobRegistry()
        self._tg = task_group

    @property
    def media_dir(self) -> Path:
        return self.settings.media_tmp_location

    async def handle_update(self, update: TelegramIncomingUpdate) -> None:
        try:
            if not await self.gate.check(update):
                return
            if isinstance(update, TelegramCallbackQuery):
                await self.handle_callback(update)
            else:
                await self.handle_message(update)
        except Exception:
            logger.exception(
                "youtube.update_failed",
                update_id=update.update_id,
                chat_id=update.chat_id,
            )

    async def handle_callback(self, query: TelegramCallbackQuery) -> None:
        data = query.data or ""
        if not data.startswith(STOP_PREFIX):
            await self.bot.answer_callback_query(query.callback_query_id)
            return
        job_id = data[len(STOP_PREFIX) :]
        if self.jobs.cancel(job_id):
            logger.info("youtube.playlist.cancel_requested", job_id=job_id)
            await self.bot.answer_callback_query(
                query.callback_query_id, text="🛑 Stopping playlist download..."
            )
        else:
            await self.bot.answer_callback_query(
                query.callback_query_id,
                text="Download already finished or not found.",
            )

    async def handle_message(self, msg: TelegramIncomingMessage) -> None:
        if msg.command in ("start", "help"):
            await self._reply(
                msg.chat_id,
                HELP_TEXT.format(
                    max_videos=self.settings.max_playlist_size,
                    max_mb=self.settings.youtube_max_file_mb,
                ),
                ephemeral=True,
            )
            return

        urls = extract_youtube_urls(msg.text)
        if not urls:
            return
        plural = len(urls) > 1
        await self._reply(
            msg.chat_id,
            f"✅ YouTube link{'s' if plural else ''} detected! Processing "
            f"{len(urls)} video{'s' if plural else ''}...",
            ephemeral=True,
        )
        for url in urls:
            try:
                if is_playlist_url(url):
                    await self.download_playlist(msg, url)
                else:
                    await self.download_single(msg, url)
            except TelegramCoderError as exc:
                await self._reply(msg.chat_id, format_error("download audio", exc))

    async def download_single(self, msg: TelegramIncomingMessage, url: str) -> None:
        if msg.sender is not None:
            await self.gate.notify_download(msg.sender, url)
        chat_id = msg.chat_id
        info = await self.service.get_video_info(url)
        if info is None:
            await self._reply(
                chat_id,
                "❌ Failed to get video information. "
                "Please check the URL and try again.",
            )
            return

        notice = await self.bot.send_message(
            chat_id=chat_id, text=f"📥 Downloading audio: {info.title}\nPlease wait..."
        )

        async def on_status(message: str) -> None:
            await self._reply(chat_id, message, ephemeral=True)

        try:
            result = await self.service.download_video(
                url, self.media_dir, on_status=on_status
            )
            if result.success and result.path is not None:
                logger.info(
                    "youtube.download.complete",
                    file=result.file_name,
                    size=result.file_size,
                    quality=result.quality,
                )
                await self._send_audio(
                    chat_id, result.path, title=info.title, caption=f"🎧 {info.title}"
                )
            else:
                text = "❌ Failed to download the audio."
                if result.too_large:
                    text += (
                        "\n\n⚠️ The file exceeds the maximum size limit "
                        f"({self.settings.youtube_max_file_mb} MB). "
                        "Please try a shorter video."
                    )
                else:
                    text += f"\n\nError: {result.error or 'Unknown error'}"
                await self._reply(chat_id, text)
        finally:
            if notice is not None:
                await self.bot.delete_message(
                    chat_id=chat_id, message_id=int(notice["message_id"])
                )

    async def download_playlist(self, msg: TelegramIncomingMessage, url: str) -> None:
        if msg.sender is not None:
            await self.gate.notify_download(msg.sender, url)
        chat_id = msg.chat_id
        info = await self.service.get_playlist_info(url)
        if info is None or not info.videos:
            await self._reply(
                chat_id, "❌ Failed to get playlist information or playlist is empty."
            )
            return

        max_videos = self.settings.max_playlist_size
        job = self.jobs.create(chat_id)
        text = "\n".join(
            [
                f"📋 Playlist detected: {info.title}",
                f"📊 Total videos: {info.video_count}",
                f"⬇️ Will download: {min(info.video_count, max_videos)} videos",
                "",
                "⏳ This may take a while. Processing sequentially...",
                "💡 Large files may require multiple quality attempts.",
            ]
        )
        status = await self.bot.send_message(
            chat_id=chat_id,
            text=text,
            reply_markup=inline_keyboard(
                [[("🛑 Stop Download", f"{STOP_PREFIX}{job.id}")]]
            ),
        )

        async def on_progress(message: str) -> None:
            # Progress lines stay until the playlist is done.
            await self._reply(chat_id, message, ephemeral="Downloading:" not in message)

        async def on_video_status(message: str) -> None:
            await self._reply(chat_id, message, ephemeral=True)

        try:
            result = await self.service.download_playlist(
                url,
                self.media_dir,
                job,
                max_videos=max_videos,
                delay_s=self.settings.playlist_download_delay_ms / 1000,
                on_status=on_progress,
                on_video_status=on_video_status,
            )
        finally:
            self.jobs.remove(job.id)

        if result.error is not None:
            await self._reply(chat_id, format_error("download playlist", result.error))
        else:
            summary = playlist_summary(result, cancelled=job.cancelled)
            await self._reply(chat_id, summary)
            for item in result.results:
                if item.success and item.path is not None:
                    await self._send_audio(
                        chat_id, item.path, caption=f"🎧 {item.file_name}"
                    )
        if status is not None:
            await self.bot.delete_message(
                chat_id=chat_id, message_id=int(status["message_id"])
            )

    async def _send_audio(
        self,
        chat_id: int,
        path: Path,
        *,
        title: str | None = None,
        caption: str | None = None,
    ) -> None:
        try:
            sent = await self.bot.send_audio(
                chat_id=chat_id, path=path, title=title, caption=caption
            )
            if sent is None:
                logger.warning("youtube.send_audio_failed", path=str(path))
        finally:
            path.unlink(missing_ok=True)
            logger.debug("youtube.file_removed", path=str(path))

    async def _reply(self, chat_id: int, text: str, *, ephemeral: bool = False) -> None:
        sent = await self.bot.send_message(chat_id=chat_id, text=text)
        delay = self.settings.message_delete_timeout_s
        if ephemeral and sent is not None and delay > 0:
            self._tg.start_soon(self._delete_later, chat_id, int(sent["message_id"]))

    async def _delete_later(self, chat_id: int, message_id: int) -> None:
        await anyio.sleep(self.settings.message_delete_timeout_s)
        await self.bot.delete_message(chat_id=chat_id, message_id=message_id)


async def run_youtube_bot(
    bot: BotClient, settings: Settings, *, service: YouTubeService
) -> int:
    killed = False
    prepare_media_dir(settings.media_tmp_location, clean=settings.clean_up_media_dir)
    me = await bot.get_me()
    logger.info("youtube.starting", username=(me or {}).get("username"))
    try:
        async with anyio.create_task_group() as tg:

            def kill() -> None:
                nonlocal killed
                killed = True
                tg.cancel_scope.cancel()

            gate = AccessGate(
                bot,
                tg,
                allowed_user_ids=settings.allowed_user_ids,
                admin_user_id=settings.admin_user_id,
                auto_kill=settings.auto_kill,
                notice_delete_after_s=settings.message_delete_timeout_s,
                on_kill=kill,
            )
            app = YouTubeBot(bot, settings, tg, service=service, gate=gate)
            await bot.set_my_commands(
                [
                    {"command": "start", "description": "Show the help message"},
                    {"command": "help", "description": "Show the help message"},
                ]
            )
            offset = await drain_backlog(bot)
            async for update in poll_incoming(bot, offset=offset):
                tg.start_soon(app.handle_update, update)
    finally:
        with anyio.CancelScope(shield=True):
            await bot.close()
    logger.info("youtube.stopped", killed=killed)
    return 1 if killed else 0
