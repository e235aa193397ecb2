from __future__ import annotations

import os
import shutil
import signal
import subprocess
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

import anyio
from anyio.abc import Process

from ..logging import get_logger
from .client import OpenCodeClient

logger = get_logger(__name__)

OPENCODE_CMD = "opencode"
DEFAULT_PORT = "4096"
DEFAULT_HOSTNAME = "localhost"
POLL_INTERVAL_S = 1.0
VERSION_TIMEOUT_S = 10.0


@dataclass(frozen=True, slots=True)
class ServerStartResult:
    success: bool
    message: str
    started: bool = False


def serve_args(base_url: str, *, cmd: str = OPENCODE_CMD) -> list[str]:
    parts = urlsplit(base_url)
    port = str(parts.port) if parts.port else DEFAULT_PORT
    hostname = parts.hostname or DEFAULT_HOSTNAME
    return [cmd, "serve", "--port", port, "--hostname", hostname]


def _terminate_process(proc: Process) -> None:
    if proc.returncode is not None:
        return
    if os.name == "posix" and proc.pid is not None:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
            return
        except ProcessLookupError:
            return
        except OSError as e:
            logger.debug("opencode.server.killpg_failed", error=str(e))
    try:
        proc.terminate()
    except ProcessLookupError:
        return


def _kill_process(proc: Process) -> None:
    if proc.returncode is not None:
        return
    if os.name == "posix" and proc.pid is not None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except OSError as e:
            logger.debug("opencode.server.killpg_failed", error=str(e))
    try:
        proc.kill()
    except ProcessLookupError:
        return


class OpenCodeServer:
    """Probe for a local ``opencode serve`` and start one when it is missing."""

    def __init__(
        self,
        client: OpenCodeClient,
        *,
        cmd: str = OPENCODE_CMD,
        startup_timeout_s: float = 30.0,
        poll_interval_s: float = POLL_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._client = client
        self._cmd = cmd
        self._startup_timeout_s = startup_timeout_s
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._sleep = sleep
        self._process: Process | None = None
        self._lock = anyio.Lock()

    @property
    def base_url(self) -> str:
        return self._client.base_url

    async def is_running(self) -> bool:
        return await self._client.is_alive()

    async def is_installed(self) -> bool:
        if shutil.which(self._cmd) is None:
            return False
        try:
            with anyio.fail_after(VERSION_TIMEOUT_S):
                result = await anyio.run_process(
                    [self._cmd, "--version"], check=False
                )
        except (OSError, TimeoutError) as exc:
            logger.info(
                "opencode.server.version_check_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return False
        return result.returncode == 0

    async def ensure_running(self) -> ServerStartResult:
        """Probe, spawn if needed, then wait until the server answers."""
        async with self._lock:
            if await self.is_running():
                return ServerStartResult(
                    success=True, message="OpenCode server is already running"
                )
            if not await self.is_installed():
                return ServerStartResult(
                    success=False,
                    message=(
                        "opencode command is not available. Please install "
                        "OpenCode: npm install -g opencode-ai"
                    ),
                )

            args = serve_args(self.base_url, cmd=self._cmd)
            logger.info("opencode.server.starting", args=args)
            try:
                self._process = await anyio.open_process(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=os.name == "posix",
                )
            except OSError as exc:
                return ServerStartResult(
                    success=False,
                    message=f"Failed to start OpenCode server: {exc}",
                )

            deadline = self._clock() + self._startup_timeout_s
            while self._clock() < deadline:
                if await self.is_running():
                    logger.info("opencode.server.started", url=self.base_url)
                    return ServerStartResult(
                        success=True,
                        message=(
                            "OpenCode server started successfully on "
                            f"{self.base_url}"
                        ),
                        started=True,
                    )
                if self._process.returncode is not None:
                    return ServerStartResult(
                        success=False,
                        message=(
                            "OpenCode server exited with code "
                            f"{self._process.returncode} during startup"
                        ),
                    )
                await self._sleep(self._poll_interval_s)

            return ServerStartResult(
                success=False,
                message=(
                    "OpenCode server started but did not respond within "
                    f"{self._startup_timeout_s:g} seconds"
                ),
            )

    async def stop(self) -> None:
        """Stop a server this process spawned; leave foreign servers alone."""
        proc = self._process
        self._process = None
        if proc is None or proc.returncode is not None:
            return
        with anyio.CancelScope(shield=True):
            _terminate_process(proc)
            with anyio.move_on_after(2.0) as scope:
                await proc.wait()
            if scope.cancelled_caught:
                _kill_process(proc)
                await proc.wait()
        logger.info("opencode.server.stopped", pid=proc.pid)
