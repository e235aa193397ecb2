from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

import anyio
import httpx

from ..logging import get_logger

logger = get_logger(__name__)

_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)
_NOT_MODIFIED_RE = re.compile(r"message is not modified", re.IGNORECASE)

MAX_RETRY_AFTER_ATTEMPTS = 3


class RetryAfter(Exception):
    def __init__(self, retry_after: float, description: str | None = None) -> None:
        super().__init__(description or f"retry after {retry_after}")
        self.retry_after = float(retry_after)
        self.description = description


class BotClient(Protocol):
    async def close(self) -> None: ...

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> list[dict] | None: ...

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        disable_notification: bool | None = False,
        entities: list[dict] | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict | None: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        entities: list[dict] | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict | None: ...

    async def delete_message(self, chat_id: int, message_id: int) -> bool: ...

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> bool: ...

    async def set_my_commands(self, commands: list[dict[str, Any]]) -> bool: ...

    async def get_me(self) -> dict | None: ...

    async def send_audio(
        self,
        chat_id: int,
        path: Path,
        title: str | None = None,
        caption: str | None = None,
    ) -> dict | None: ...


def _retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
    description = payload.get("description")
    if isinstance(description, str):
        return _retry_after_from_description(description)
    return None


def _retry_after_from_description(description: str) -> float | None:
    match = _RETRY_AFTER_RE.search(description)
    if not match:
        return None
    return float(match.group(1))


def _retry_after_from_response(resp: httpx.Response) -> float | None:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        retry_after = _retry_after_from_payload(payload)
        if retry_after is not None:
            return retry_after
    return _retry_after_from_description(resp.text)


def _is_not_modified(payload: dict[str, Any]) -> bool:
    description = payload.get("description")
    return isinstance(description, str) and bool(_NOT_MODIFIED_RE.search(description))


class TelegramClient:
    def __init__(
        self,
        token: str,
        timeout_s: float = 120,
        client: httpx.AsyncClient | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        max_retry_after_attempts: int = MAX_RETRY_AFTER_ATTEMPTS,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"https://api.telegram.org/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None
        self._sleep = sleep
        self._max_retry_after_attempts = max_retry_after_attempts

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(
        self,
        method: str,
        json_data: dict[str, Any] | None = None,
        *,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any | None:
        attempt = 0
        while True:
            try:
                return await self._post(method, json_data, data=data, files=files)
            except RetryAfter as exc:
                attempt += 1
                if attempt > self._max_retry_after_attempts:
                    logger.error(
                        "telegram.rate_limited.giving_up",
                        method=method,
                        attempts=attempt,
                    )
                    return None
                await self._sleep(exc.retry_after)

    async def _post(
        self,
        method: str,
        json_data: dict[str, Any] | None,
        *,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any | None:
        logger.debug("telegram.request", method=method, payload=json_data or data)
        url = f"{self._base}/{method}"
        try:
            if files is not None:
                resp = await self._client.post(url, data=data, files=files)
            else:
                resp = await self._client.post(url, json=json_data or {})
        except httpx.HTTPError as e:
            logger.error(
                "telegram.network_error",
                method=method,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            return None

        if resp.status_code == 429:
            retry_after = _retry_after_from_response(resp)
            if retry_after is not None:
                logger.info(
                    "telegram.rate_limited",
                    method=method,
                    status=resp.status_code,
                    retry_after=retry_after,
                )
                raise RetryAfter(retry_after)

        try:
            payload = resp.json()
        except ValueError as e:
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                error=str(e),
                body=resp.text,
            )
            return None

        if not isinstance(payload, dict):
            logger.error("telegram.invalid_payload", method=method, payload=payload)
            return None

        if not payload.get("ok"):
            if method == "editMessageText" and _is_not_modified(payload):
                logger.debug("telegram.edit.not_modified", method=method)
                return True
            logger.error(
                "telegram.api_error",
                method=method,
                status=resp.status_code,
                payload=payload,
            )
            return None

        logger.debug("telegram.response", method=method, payload=payload)
        return payload.get("result")

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> list[dict] | None:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        res = await self._call("getUpdates", params)
        return res if isinstance(res, list) else None

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        disable_notification: bool | None = False,
        entities: list[dict] | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict | None:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if disable_notification is not None:
            params["disable_notification"] = disable_notification
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = reply_to_message_id
        if entities is not None:
            params["entities"] = entities
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        if reply_markup is not None:
            params["reply_markup"] = reply_markup
        res = await self._call("sendMessage", params)
        return res if isinstance(res, dict) else None

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        entities: list[dict] | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict | None:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
        }
        if entities is not None:
            params["entities"] = entities
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        if reply_markup is not None:
            params["reply_markup"] = reply_markup
        res = await self._call("editMessageText", params)
        if isinstance(res, dict):
            return res
        if res is True:
            return {"message_id": message_id}
        return None

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        res = await self._call(
            "deleteMessage", {"chat_id": chat_id, "message_id": message_id}
        )
        return bool(res)

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> bool:
        params: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text is not None:
            params["text"] = text
        if show_alert:
            params["show_alert"] = True
        res = await self._call("answerCallbackQuery", params)
        return bool(res)

    async def set_my_commands(self, commands: list[dict[str, Any]]) -> bool:
        res = await self._call("setMyCommands", {"commands": commands})
        return bool(res)

    async def get_me(self) -> dict | None:
        res = await self._call("getMe", {})
        return res if isinstance(res, dict) else None

    async def send_audio(
        self,
        chat_id: int,
        path: Path,
        title: str | None = None,
        caption: str | None = None,
    ) -> dict | None:
        content = await anyio.Path(path).read_bytes()
        data: dict[str, Any] = {"chat_id": str(chat_id)}
        if title is not None:
            data["title"] = title
        if caption is not None:
            data["caption"] = caption
        files = {"audio": (path.name, content, "audio/mpeg")}
        res = await self._call("sendAudio", data=data, files=files)
        return res if isinstance(res, dict) else None
