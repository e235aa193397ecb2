from __future__ import annotations

from .bot import YouTubeBot, run_youtube_bot
from .service import (
    DownloadJob,
    DownloadJobRegistry,
    DownloadResult,
    YouTubeService,
    extract_youtube_urls,
    is_playlist_url,
    is_youtube_url,
)

__all__ = [
    "DownloadJob",
    "DownloadJobRegistry",
    "DownloadResult",
    "YouTubeBot",
    "YouTubeService",
    "extract_youtube_urls",
    "is_playlist_url",
    "is_youtube_url",
    "run_youtube_bot",
]
