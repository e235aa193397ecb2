from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import msgspec

from ..errors import BackendError, BackendUnreachable
from ..logging import get_logger
from .models import (
    Agent,
    DecodedEvent,
    FileContent,
    PromptReply,
    SessionInfo,
    decode_event,
)

logger = get_logger(__name__)

DEFAULT_BASE_URL = "http://localhost:4096"
PROBE_TIMEOUT_S = 5.0


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the joined ``data:`` payload of each server-sent event."""
    data: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field != "data":
            continue
        data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


class OpenCodeClient:
    """Thin async wrapper over the OpenCode server's HTTP API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout_s: float = 300,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout_s
        )
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        logger.debug("opencode.request", operation=operation, method=method, path=path)
        try:
            resp = await self._client.request(
                method, self._url(path), json=json, params=params
            )
        except httpx.TransportError as exc:
            logger.warning(
                "opencode.unreachable",
                operation=operation,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise BackendUnreachable(self.base_url) from exc
        if resp.status_code >= 400:
            logger.error(
                "opencode.http_error",
                operation=operation,
                status=resp.status_code,
                body=resp.text[:500],
            )
            raise BackendError(operation, resp.status_code, resp.text)
        return resp

    def _decode(self, operation: str, resp: httpx.Response, kind: Any) -> Any:
        try:
            return msgspec.json.decode(resp.content, type=kind)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            logger.error("opencode.bad_response", operation=operation, error=str(exc))
            raise BackendError(operation, resp.status_code, str(exc)) from exc

    async def is_alive(self, *, timeout_s: float = PROBE_TIMEOUT_S) -> bool:
        try:
            resp = await self._client.head(self._url("/"), timeout=timeout_s)
        except httpx.HTTPError:
            return False
        return resp.status_code < 500

    async def create_session(self, title: str) -> SessionInfo:
        resp = await self._request(
            "create session", "POST", "/session", json={"title": title}
        )
        return self._decode("create session", resp, SessionInfo)

    async def list_sessions(self) -> list[SessionInfo]:
        resp = await self._request("list sessions", "GET", "/session")
        return self._decode("list sessions", resp, list[SessionInfo])

    async def delete_session(self, session_id: str) -> None:
        await self._request("delete session", "DELETE", f"/session/{session_id}")

    async def update_session_title(self, session_id: str, title: str) -> SessionInfo:
        resp = await self._request(
            "rename session", "PATCH", f"/session/{session_id}", json={"title": title}
        )
        return self._decode("rename session", resp, SessionInfo)

    async def abort_session(self, session_id: str) -> None:
        await self._request("abort session", "POST", f"/session/{session_id}/abort")

    async def prompt(self, session_id: str, text: str, *, agent: str) -> PromptReply:
        body = {"parts": [{"type": "text", "text": text}], "agent": agent}
        resp = await self._request(
            "send prompt", "POST", f"/session/{session_id}/message", json=body
        )
        return self._decode("send prompt", resp, PromptReply)

    async def list_agents(self) -> list[Agent]:
        resp = await self._request("list agents", "GET", "/agent")
        return self._decode("list agents", resp, list[Agent])

    async def find_files(self, query: str) -> list[str]:
        resp = await self._request(
            "find files",
            "GET",
            "/find/file",
            params={"query": query, "dirs": "false"},
        )
        return self._decode("find files", resp, list[str])

    async def read_file(self, path: str) -> FileContent:
        resp = await self._request(
            "read file", "GET", "/file/content", params={"path": path}
        )
        return self._decode("read file", resp, FileContent)

    async def iter_events(self) -> AsyncIterator[DecodedEvent]:
        """Subscribe to the server-sent event stream."""
        timeout = httpx.Timeout(PROBE_TIMEOUT_S, read=None)
        try:
            async with self._client.stream(
                "GET",
                self._url("/event"),
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise BackendError(
                        "subscribe to events", resp.status_code, resp.text
                    )
                logger.info("opencode.events.subscribed", url=self._url("/event"))
                async for payload in iter_sse_data(resp.aiter_lines()):
                    event = decode_event(payload)
                    if event is None:
                        logger.debug("opencode.events.non_json", payload=payload[:200])
                        continue
                    yield event
        except httpx.HTTPError as exc:
            logger.warning(
                "opencode.events.disconnected",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise BackendUnreachable(self.base_url) from exc
