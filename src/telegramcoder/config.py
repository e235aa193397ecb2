from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigError
from .logging import get_logger

logger = get_logger(__name__)

__all__ = ["ConfigError", "ENV_FIELDS", "Settings", "load_settings"]

# Environment variable -> Settings field.
ENV_FIELDS: dict[str, str] = {
    "TELEGRAM_BOT_TOKENS": "bot_tokens",
    "ALLOWED_USER_IDS": "allowed_user_ids",
    "ADMIN_USER_ID": "admin_user_id",
    "AUTO_KILL": "auto_kill",
    "MESSAGE_DELETE_TIMEOUT": "message_delete_timeout_ms",
    "OPENCODE_SERVER_URL": "opencode_server_url",
    "OPENCODE_STARTUP_TIMEOUT": "opencode_startup_timeout_s",
    "UNHANDLED_EVENTS": "unhandled_events",
    "RENDER_THROTTLE_MS": "render_throttle_ms",
    "RENDER_TEXT_DELETE_MS": "render_text_delete_ms",
    "RENDER_STATUS_DELETE_MS": "render_status_delete_ms",
    "RENDER_MAX_LINES": "render_max_lines",
    "FILE_MENTION_MAX_SIZE": "file_mention_max_size",
    "FILE_MENTION_MAX_RESULTS": "file_mention_max_results",
    "MEDIA_TMP_LOCATION": "media_tmp_location",
    "CLEAN_UP_MEDIADIR": "clean_up_media_dir",
    "MAX_PLAYLIST_SIZE": "max_playlist_size",
    "PLAYLIST_DOWNLOAD_DELAY_MS": "playlist_download_delay_ms",
    "YT_DLP_PATH": "yt_dlp_path",
    "YOUTUBE_MAX_FILE_MB": "youtube_max_file_mb",
}

_TRUE_VALUES = frozenset({"true", "1"})


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    bot_tokens: list[SecretStr] = Field(min_length=1)
    allowed_user_ids: tuple[int, ...] = ()
    admin_user_id: int | None = None
    auto_kill: bool = False
    message_delete_timeout_ms: int = Field(default=10_000, ge=0)

    opencode_server_url: str = "http://localhost:4096"
    opencode_startup_timeout_s: float = Field(default=30.0, gt=0)
    unhandled_events: Literal["drop", "format"] = "drop"

    render_throttle_ms: int = Field(default=1_000, ge=0)
    render_text_delete_ms: int = Field(default=5_000, gt=0)
    render_status_delete_ms: int = Field(default=2_500, gt=0)
    render_max_lines: int = Field(default=50, ge=1)

    file_mention_max_size: int = Field(default=100_000, ge=0)
    file_mention_max_results: int = Field(default=10, ge=1)

    media_tmp_location: Path = Path("/tmp/ytBOT_media")
    clean_up_media_dir: bool = False
    max_playlist_size: int = Field(default=50, ge=1)
    playlist_download_delay_ms: int = Field(default=1_000, ge=0)
    yt_dlp_path: str = "yt-dlp"
    youtube_max_file_mb: int = Field(default=50, ge=1)

    @field_validator("bot_tokens", mode="before")
    @classmethod
    def _parse_tokens(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _split_csv(value)
        return value

    @field_validator("allowed_user_ids", mode="before")
    @classmethod
    def _parse_user_ids(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        ids: list[int] = []
        for item in _split_csv(value):
            try:
                ids.append(int(item))
            except ValueError:
                logger.warning("config.invalid_user_id", value=item)
        return tuple(ids)

    @field_validator("admin_user_id", mode="before")
    @classmethod
    def _parse_admin(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            try:
                return int(value)
            except ValueError:
                logger.warning("config.invalid_admin_user_id", value=value)
                return None
        return value

    @field_validator("auto_kill", "clean_up_media_dir", mode="before")
    @classmethod
    def _parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_VALUES
        return value

    @field_validator("unhandled_events", mode="before")
    @classmethod
    def _normalize_policy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("opencode_server_url")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return value

    @model_validator(mode="after")
    def _default_admin(self) -> Settings:
        if self.admin_user_id is None and self.allowed_user_ids:
            object.__setattr__(self, "admin_user_id", self.allowed_user_ids[0])
        return self

    def bot_token(self, index: int = 0) -> str:
        try:
            return self.bot_tokens[index].get_secret_value()
        except IndexError:
            raise ConfigError(
                f"TELEGRAM_BOT_TOKENS has {len(self.bot_tokens)} token(s); "
                f"index {index} is out of range."
            ) from None

    @property
    def message_delete_timeout_s(self) -> float:
        return self.message_delete_timeout_ms / 1000


def _field_to_env() -> dict[str, str]:
    return {field: env for env, field in ENV_FIELDS.items()}


def _format_validation_error(exc: ValidationError) -> str:
    names = _field_to_env()
    lines = []
    for err in exc.errors():
        loc = err.get("loc") or ()
        field = str(loc[0]) if loc else ""
        env_name = names.get(field, field or "settings")
        lines.append(f"{env_name}: {err.get('msg')}")
    return "; ".join(lines)


def load_settings(
    env: Mapping[str, str] | None = None,
    *,
    dotenv_path: str | Path | None = ".env",
) -> Settings:
    """Build settings from the process environment.

    Values in ``dotenv_path`` fill in variables the environment does not set.
    Pass ``env`` to bypass both sources (used by tests).
    """
    if env is None:
        merged: dict[str, str | None] = {}
        if dotenv_path is not None and Path(dotenv_path).is_file():
            merged.update(dotenv_values(dotenv_path))
        merged.update(os.environ)
        env = {key: value for key, value in merged.items() if value is not None}

    raw: dict[str, Any] = {}
    for env_name, field in ENV_FIELDS.items():
        value = env.get(env_name)
        if value is None or not value.strip():
            continue
        raw[field] = value

    if "bot_tokens" not in raw:
        raise ConfigError(
            "No bot tokens found in TELEGRAM_BOT_TOKENS environment variable."
        )

    try:
        settings = Settings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid configuration: {_format_validation_error(exc)}"
        ) from exc

    if not settings.allowed_user_ids:
        logger.warning(
            "config.no_allowed_users",
            hint="Set ALLOWED_USER_IDS to restrict who can use the bot.",
        )
    return settings
