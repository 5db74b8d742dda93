# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Client side of the daemon socket, including on-demand daemon startup."""

from __future__ import annotations

import asyncio
import contextlib
import os
import subprocess
import sys
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel

from kosbot.daemon.protocol import (
    CallRequest,
    ConnectRequest,
    DaemonResponse,
    DisconnectRequest,
    ExecuteRequest,
    PingRequest,
    ShutdownRequest,
    StatusRequest,
    decode_response,
    encode_request,
)
from kosbot.daemon.runtime import STREAM_LIMIT, pid_alive, read_pid
from kosbot.errors import DaemonError, DaemonProtocolError, DaemonStartError
from kosbot.settings import Settings

log = structlog.get_logger()


class DaemonClient:
    """Send requests to the daemon, starting it first when needed."""

    def __init__(self, settings: Settings | None = None, *, spawner: Callable[[], None] | None = None) -> None:
        """Initialize client.

        Args:
            settings: Settings instance (will be created if None)
            spawner: Starts a daemon process (defaults to ``python -m kosbot.daemon``)
        """
        self._settings = settings or Settings()
        self.socket_path = self._settings.daemon.socket_path
        self.pid_path = self._settings.daemon.pid_path
        self._spawn = spawner or self._spawn_process

    def is_running(self) -> bool:
        """Check the runtime files, removing them if their process is gone."""
        if not self.socket_path.exists():
            return False
        if not self.pid_path.exists():
            return True

        pid = read_pid(self.pid_path)
        if pid is not None and pid_alive(pid):
            return True

        log.info("daemon_stale_files_removed", pid=pid)
        self.socket_path.unlink(missing_ok=True)
        self.pid_path.unlink(missing_ok=True)
        return False

    async def ensure_running(self) -> None:
        """Start a daemon unless one is already up.

        Raises:
            DaemonStartError: If the daemon does not come up in time
        """
        if self.is_running():
            return

        log.info("daemon_spawning", socket=str(self.socket_path))
        self._spawn()

        daemon_settings = self._settings.daemon
        for _ in range(daemon_settings.max_spawn_retries):
            await asyncio.sleep(daemon_settings.spawn_retry_delay_ms / 1000)
            if self.is_running():
                return
        raise DaemonStartError("Failed to start daemon")

    async def request(self, request: BaseModel, *, autostart: bool = True) -> DaemonResponse:
        """Send one request and wait for its response line.

        Raises:
            DaemonError: If the daemon cannot be reached
            DaemonProtocolError: If the connection drops or the reply is garbage
        """
        if autostart:
            await self.ensure_running()

        timeout_s = self._settings.daemon.connect_timeout_ms / 1000
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path), limit=STREAM_LIMIT),
                timeout=timeout_s,
            )
        except TimeoutError as e:
            raise DaemonError("Connection to daemon timed out") from e
        except OSError as e:
            raise DaemonError(f"Cannot reach daemon: {e}") from e

        try:
            writer.write(encode_request(request))
            await writer.drain()
            line = await reader.readline()
        except (OSError, ValueError) as e:
            raise DaemonProtocolError(f"Daemon connection failed: {e}") from e
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        if not line.endswith(b"\n"):
            raise DaemonProtocolError("Connection closed before a response was received")
        try:
            return decode_response(line)
        except ValueError as e:
            raise DaemonProtocolError(f"Invalid response from daemon: {line[:200]!r}") from e

    async def ping(self) -> DaemonResponse:
        return await self.request(PingRequest(), autostart=False)

    async def status(self) -> DaemonResponse:
        if not self.is_running():
            return DaemonResponse(success=True, output="Daemon not running", connected=False)
        return await self.request(StatusRequest(), autostart=False)

    async def shutdown(self) -> DaemonResponse:
        if not self.is_running():
            return DaemonResponse(success=True, output="Daemon not running")
        return await self.request(ShutdownRequest(), autostart=False)

    async def connect(self, cpu_id: int | None = None, cpu_label: str | None = None) -> DaemonResponse:
        return await self.request(ConnectRequest(cpu_id=cpu_id, cpu_label=cpu_label))

    async def disconnect(self) -> DaemonResponse:
        if not self.is_running():
            return DaemonResponse(success=True, output="Daemon not running", connected=False)
        return await self.request(DisconnectRequest(), autostart=False)

    async def execute(
        self,
        command: str,
        timeout: int | None = None,
        cpu_id: int | None = None,
        cpu_label: str | None = None,
    ) -> DaemonResponse:
        return await self.request(ExecuteRequest(command=command, timeout=timeout, cpu_id=cpu_id, cpu_label=cpu_label))

    async def call(
        self,
        handler: str,
        args: dict[str, Any] | None = None,
        cpu_id: int | None = None,
        cpu_label: str | None = None,
    ) -> DaemonResponse:
        return await self.request(CallRequest(handler=handler, args=args or {}, cpu_id=cpu_id, cpu_label=cpu_label))

    def _spawn_process(self) -> None:
        env = dict(os.environ)
        env["KOS_DAEMON__RUNTIME_DIR"] = str(self._settings.daemon.runtime_dir)
        env["KOS_HOST"] = self._settings.host
        env["KOS_PORT"] = str(self._settings.port)
        subprocess.Popen(  # noqa: S603
            [sys.executable, "-m", "kosbot.daemon"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
            close_fds=True,
        )
