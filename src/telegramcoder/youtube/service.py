"""Audio downloads through the ``yt-dlp`` command line tool.

Single videos are fetched as MP3. When the result is larger than the upload
limit the download is retried at a lower bitrate, estimated from the size of
the previous attempt, until it fits or the attempts run out. Playlists are
downloaded one video at a time and can be stopped between videos.
"""

from __future__ import annotations

import math
import re
import shutil
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import anyio
import msgspec

from ..errors import DownloadError
from ..logging import get_logger

logger = get_logger(__name__)

MAX_URL_LENGTH = 2048
MAX_ATTEMPTS = 6
MIN_BITRATE_KBPS = 48
ESTIMATED_BEST_BITRATE_KBPS = 256
FALLBACK_BITRATES_KBPS = (192, 128, 96, 64, 48)
SIZE_SAFETY_MARGIN = 0.95
FILE_DETECTION_WINDOW_S = 180.0
TOO_LARGE = "File too large"

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_YOUTUBE_RE = re.compile(
    r"^https?://(www\.)?(youtube\.com/(watch\?v=|shorts/|playlist\?list=)|youtu\.be/)",
    re.IGNORECASE,
)
_URL_SEARCH_RE = re.compile(
    r"(https?://)?(www\.)?(youtube\.com/(watch\?v=|shorts/|playlist\?list=)"
    r"|youtu\.be/)\S+",
    re.IGNORECASE,
)
_PLAYLIST_ID_RE = re.compile(r"[?&]list=([a-zA-Z0-9_-]+)")
_PLAYLIST_PAGE_RE = re.compile(r"youtube\.com/playlist\?list=", re.IGNORECASE)

StatusCallback = Callable[[str], Awaitable[None]]


def _has_valid_scheme(url: str) -> bool:
    if len(url) > MAX_URL_LENGTH:
        logger.warning("youtube.url.too_long", length=len(url))
        return False
    return bool(_SCHEME_RE.match(url))


def is_youtube_url(url: str) -> bool:
    return _has_valid_scheme(url) and bool(_YOUTUBE_RE.match(url))


def extract_youtube_urls(text: str) -> list[str]:
    return [
        match.group(0)
        for match in _URL_SEARCH_RE.finditer(text)
        if is_youtube_url(match.group(0))
    ]


def is_playlist_url(url: str) -> bool:
    if not _has_valid_scheme(url):
        return False
    return bool(_PLAYLIST_PAGE_RE.search(url) or _PLAYLIST_ID_RE.search(url))


def extract_playlist_id(url: str) -> str | None:
    match = _PLAYLIST_ID_RE.search(url)
    return match.group(1) if match else None


def next_bitrate(current_kbps: int, actual_mb: float, target_mb: float) -> int:
    """Scale the bitrate by how far the last file overshot the limit."""
    ratio = target_mb / actual_mb * SIZE_SAFETY_MARGIN
    return max(math.floor(current_kbps * ratio), MIN_BITRATE_KBPS)


def is_within(path: Path, base: Path) -> bool:
    return path.resolve().is_relative_to(base.resolve())


def _mb(size: int) -> float:
    return size / (1024 * 1024)


@dataclass(frozen=True, slots=True)
class VideoInfo:
    title: str
    duration: float = 0
    file_size: int | None = None


@dataclass(frozen=True, slots=True)
class PlaylistVideo:
    id: str
    title: str
    duration: float
    url: str


@dataclass(frozen=True, slots=True)
class PlaylistInfo:
    title: str
    videos: list[PlaylistVideo]

    @property
    def video_count(self) -> int:
        return len(self.videos)


@dataclass(frozen=True, slots=True)
class DownloadResult:
    success: bool
    path: Path | None = None
    error: str | None = None
    file_size: int | None = None
    bitrate_kbps: int | None = None
    quality: str | None = None

    @property
    def file_name(self) -> str | None:
        return self.path.name if self.path is not None else None

    @property
    def too_large(self) -> bool:
        return not self.success and TOO_LARGE.lower() in (self.error or "").lower()


@dataclass(slots=True)
class PlaylistResult:
    downloaded: int = 0
    failed: int = 0
    total: int = 0
    error: str | None = None
    results: list[DownloadResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.downloaded > 0

    @property
    def skipped(self) -> int:
        return self.total - self.downloaded - self.failed


@dataclass(slots=True)
class DownloadJob:
    id: str
    cancelled: bool = False
    downloaded: int = 0
    failed: int = 0
    total: int = 0

    def cancel(self) -> None:
        self.cancelled = True


class DownloadJobRegistry:
    """Playlist downloads that can still be stopped."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._jobs: dict[str, DownloadJob] = {}
        self._clock = clock

    def create(self, chat_id: int) -> DownloadJob:
        job_id = f"{chat_id}_{int(self._clock() * 1000)}"
        while job_id in self._jobs:
            job_id += "_"
        job = DownloadJob(id=job_id)
        self._jobs[job_id] = job
        return job

    def get(self, job_id: str) -> DownloadJob | None:
        return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancel()
        return True

    def remove(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._jobs)


class _VideoJson(msgspec.Struct, forbid_unknown_fields=False):
    title: str | None = None
    duration: float | None = None
    filesize: int | None = None
    filesize_approx: int | None = None


class _PlaylistEntryJson(msgspec.Struct, forbid_unknown_fields=False):
    id: str | None = None
    kind: str | None = msgspec.field(default=None, name="_type")
    title: str | None = None
    playlist_title: str | None = None
    duration: float | None = None


class YouTubeService:
    def __init__(
        self,
        yt_dlp_path: str = "yt-dlp",
        *,
        max_file_mb: float = 50,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self.yt_dlp_path = yt_dlp_path
        self.max_file_mb = max_file_mb
        self._sleep = sleep

    def verify(self) -> None:
        """Fail early when the configured yt-dlp binary does not exist."""
        path = Path(self.yt_dlp_path)
        if path.is_file() or shutil.which(self.yt_dlp_path) is not None:
            return
        if path.exists():
            raise DownloadError(f"yt-dlp path is not a file: {self.yt_dlp_path}")
        raise DownloadError(f"yt-dlp not found at path: {self.yt_dlp_path}")

    async def _execute(self, args: list[str]) -> str:
        cmd = [self.yt_dlp_path, *args]
        logger.debug("youtube.yt_dlp.run", args=args)
        try:
            result = await anyio.run_process(cmd, check=False)
        except OSError as exc:
            raise DownloadError(f"Failed to run yt-dlp: {exc}") from exc
        stdout = result.stdout.decode("utf-8", errors="replace")
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            code = result.returncode
            raise DownloadError(stderr or f"yt-dlp exited with code {code}")
        return stdout

    async def get_video_info(self, url: str) -> VideoInfo | None:
        try:
            output = await self._execute(["--dump-json", "--no-playlist", "--", url])
            info = msgspec.json.decode(output.strip(), type=_VideoJson)
        except (DownloadError, msgspec.DecodeError, msgspec.ValidationError) as exc:
            logger.warning("youtube.video_info.failed", url=url, error=str(exc))
            return None
        return VideoInfo(
            title=info.title or "Unknown",
            duration=info.duration or 0,
            file_size=info.filesize or info.filesize_approx,
        )

    async def get_playlist_info(self, url: str) -> PlaylistInfo | None:
        try:
            output = await self._execute(["--dump-json", "--flat-playlist", "--", url])
        except DownloadError as exc:
            logger.warning("youtube.playlist_info.failed", url=url, error=str(exc))
            return None
        title = "Unknown Playlist"
        videos: list[PlaylistVideo] = []
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                entry = msgspec.json.decode(line, type=_PlaylistEntryJson)
            except (msgspec.DecodeError, msgspec.ValidationError) as exc:
                logger.debug("youtube.playlist_entry.invalid", error=str(exc))
                continue
            if entry.kind == "playlist":
                title = entry.title or title
            elif entry.playlist_title:
                title = entry.playlist_title
            if entry.id and entry.kind != "playlist":
                videos.append(
                    PlaylistVideo(
                        id=entry.id,
                        title=entry.title or "Unknown",
                        duration=entry.duration or 0,
                        url=f"https://www.youtube.com/watch?v={entry.id}",
                    )
                )
        if not videos:
            title = "Unknown Playlist"
        return PlaylistInfo(title=title, videos=videos)

    async def download_video(
        self,
        url: str,
        output_dir: Path,
        *,
        on_status: StatusCallback | None = None,
    ) -> DownloadResult:
        """Download ``url`` as MP3, lowering the bitrate until it fits."""

        async def status(message: str) -> None:
            logger.info("youtube.download.status", url=url, message=message)
            if on_status is not None:
                await on_status(message)

        result = await self._attempt(url, output_dir, "0")
        attempts = 1
        while result.too_large and attempts < MAX_ATTEMPTS:
            size_mb = _mb(result.file_size) if result.file_size else None
            if size_mb is not None and attempts == 1:
                bitrate = next_bitrate(
                    ESTIMATED_BEST_BITRATE_KBPS, size_mb, self.max_file_mb
                )
                note = f"File too large ({size_mb:.1f}MB). Reducing quality..."
            elif size_mb is not None and result.bitrate_kbps:
                bitrate = next_bitrate(result.bitrate_kbps, size_mb, self.max_file_mb)
                note = f"Still too large ({size_mb:.1f}MB). Trying {bitrate}kbps..."
            else:
                index = min(attempts - 1, len(FALLBACK_BITRATES_KBPS) - 1)
                bitrate = FALLBACK_BITRATES_KBPS[index]
                note = f"File too large. Trying {bitrate}kbps..."
            await status(f"⚠️ {note} [Attempt {attempts + 1}/{MAX_ATTEMPTS}]")
            result = await self._attempt(url, output_dir, f"{bitrate}K")
            attempts += 1

        if result.too_large:
            await status(
                f"❌ Unable to reduce file size below {self.max_file_mb:g}MB even at "
                "lowest quality. Please try a shorter video."
            )
        return result

    async def _attempt(
        self, url: str, output_dir: Path, quality: str
    ) -> DownloadResult:
        bitrate = 0 if quality == "0" else int(quality.rstrip("K"))
        args = [
            "-x",
            "--audio-format",
            "mp3",
            "--audio-quality",
            quality,
            "--no-playlist",
            "--output",
            str(output_dir / "%(title)s.%(ext)s"),
            "--print",
            "after_move:filepath",
            "--no-warnings",
            "--",
            url,
        ]
        try:
            output = await self._execute(args)
            path = self._find_output(output, output_dir)
        except DownloadError as exc:
            message = str(exc)
            if "File is larger than max-filesize" in message:
                message = TOO_LARGE
            logger.warning("youtube.download.failed", url=url, error=message)
            return DownloadResult(success=False, error=message, bitrate_kbps=bitrate)

        size = path.stat().st_size
        if _mb(size) > self.max_file_mb:
            logger.info(
                "youtube.download.too_large",
                path=str(path),
                size_mb=round(_mb(size), 2),
                limit_mb=self.max_file_mb,
            )
            path.unlink(missing_ok=True)
            return DownloadResult(
                success=False, error=TOO_LARGE, file_size=size, bitrate_kbps=bitrate
            )
        return DownloadResult(
            success=True,
            path=path,
            file_size=size,
            bitrate_kbps=bitrate,
            quality=quality,
        )

    def _find_output(self, output: str, output_dir: Path) -> Path:
        for line in output.splitlines():
            candidate = Path(line.strip())
            if not line.strip() or candidate.suffix != ".mp3" or not candidate.exists():
                continue
            if not is_within(candidate, output_dir):
                logger.error("youtube.path_traversal", path=str(candidate))
                raise DownloadError("Path traversal detected in output file")
            return candidate

        cutoff = time.time() - FILE_DETECTION_WINDOW_S
        recent = [
            path
            for path in output_dir.glob("*.mp3")
            if path.is_file() and path.stat().st_mtime >= cutoff
        ]
        if not recent:
            raise DownloadError("Downloaded file not found")
        newest = max(recent, key=lambda p: p.stat().st_mtime)
        if not is_within(newest, output_dir):
            raise DownloadError("Path traversal detected in output file")
        return newest

    async def download_playlist(
        self,
        url: str,
        output_dir: Path,
        job: DownloadJob,
        *,
        max_videos: int = 50,
        delay_s: float = 1.0,
        on_status: StatusCallback | None = None,
        on_video_status: StatusCallback | None = None,
    ) -> PlaylistResult:
        """Download the first ``max_videos`` entries one after another."""
        info = await self.get_playlist_info(url)
        if info is None or not info.videos:
            return PlaylistResult(
                error="Failed to get playlist information or playlist is empty"
            )

        videos = info.videos[:max_videos]
        result = PlaylistResult(total=len(videos))
        job.total = len(videos)
        if info.video_count > max_videos and on_status is not None:
            await on_status(
                f"⚠️ Playlist has {info.video_count} videos. "
                f"Downloading first {max_videos} only."
            )

        for index, video in enumerate(videos, start=1):
            if job.cancelled:
                logger.info(
                    "youtube.playlist.stopped",
                    job_id=job.id,
                    at=index,
                    total=len(videos),
                )
                break
            prefix = f"[{index}/{len(videos)}]"
            if on_status is not None:
                await on_status(f"📥 {prefix} Downloading: {video.title}")
            outcome = await self.download_video(
                video.url, output_dir, on_status=on_video_status
            )
            result.results.append(outcome)
            if outcome.success:
                result.downloaded += 1
                job.downloaded += 1
                size = f"{_mb(outcome.file_size or 0):.1f}MB"
                message = f"✅ {prefix} Complete: {video.title} ({size})"
            else:
                result.failed += 1
                job.failed += 1
                message = f"❌ {prefix} Failed: {video.title} - {outcome.error}"
            if on_status is not None:
                await on_status(message)
            if index < len(videos):
                await self._sleep(delay_s)
        return result


def prepare_media_dir(path: Path, *, clean: bool = False) -> None:
    path.mkdir(parents=True, exist_ok=True)
    if not clean:
        return
    removed = 0
    for entry in path.iterdir():
        if entry.is_file():
            entry.unlink(missing_ok=True)
            removed += 1
    if removed:
        logger.info("youtube.media_dir.cleaned", path=str(path), removed=removed)
