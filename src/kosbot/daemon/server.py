# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Long-lived daemon that keeps one kOS terminal attached between commands.

Clients talk newline-delimited JSON over a Unix socket. A single
ConnectionSupervisor owns the terminal and every request that touches it
runs under one lock, so kOS only ever sees one command at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from typing import Any

import structlog
from pydantic import ValidationError

from kosbot.core.health import ConnectionSupervisor
from kosbot.daemon.handlers import HandlerRegistry, default_registry
from kosbot.daemon.protocol import (
    CallRequest,
    ConnectRequest,
    DaemonRequest,
    DaemonResponse,
    DisconnectRequest,
    ExecuteRequest,
    PingRequest,
    ShutdownRequest,
    StatusRequest,
    encode_response,
    parse_request,
)
from kosbot.daemon.runtime import STREAM_LIMIT, pid_alive, probe_daemon, read_pid
from kosbot.errors import DaemonAlreadyRunningError, KosError, is_transport_failure
from kosbot.settings import Settings

log = structlog.get_logger()

SHUTDOWN_REPLY_DELAY_S = 0.1


def describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return "; ".join(parts)


class KosDaemon:
    """Unix-socket server multiplexing clients onto one kOS connection."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        supervisor: ConnectionSupervisor | None = None,
        registry: HandlerRegistry | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self.socket_path = self._settings.daemon.socket_path
        self.pid_path = self._settings.daemon.pid_path
        self.supervisor = supervisor or ConnectionSupervisor(self._settings)
        self.registry = registry or default_registry()

        self._server: asyncio.AbstractServer | None = None
        self._lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._idle_handle: asyncio.TimerHandle | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._active_clients = 0
        self._shutting_down = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def active_clients(self) -> int:
        return self._active_clients

    @property
    def is_serving(self) -> bool:
        return self._server is not None and not self._shutting_down

    async def start(self, *, install_signal_handlers: bool = False) -> None:
        """Claim the runtime files and start listening.

        Raises:
            DaemonAlreadyRunningError: If another daemon owns the socket or PID file
        """
        await self._claim_runtime_files()

        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(str(os.getpid()), encoding="utf-8")

        try:
            self._server = await asyncio.start_unix_server(
                self._handle_client, path=str(self.socket_path), limit=STREAM_LIMIT
            )
        except OSError:
            self._remove_pid_file()
            raise
        with contextlib.suppress(OSError):
            os.chmod(self.socket_path, 0o600)

        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_shutdown)

        self._reset_idle_timer()
        log.info("daemon_listening", socket=str(self.socket_path), pid=os.getpid())

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def run(self) -> int:
        """Serve until shut down. Returns a process exit code."""
        try:
            await self.start(install_signal_handlers=True)
        except DaemonAlreadyRunningError as e:
            log.error("daemon_already_running", error=str(e))
            return 1
        await self.wait_stopped()
        return 0

    def request_shutdown(self) -> None:
        """Schedule shutdown from a callback (signal, timer)."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown())

    async def shutdown(self) -> None:
        """Drop the kOS connection, stop listening and remove runtime files."""
        if self._shutting_down:
            await self._stopped.wait()
            return
        self._shutting_down = True
        self._cancel_idle_timer()
        log.info("daemon_shutting_down")

        await self.supervisor.disconnect()

        if self._server is not None:
            self._server.close()

        with contextlib.suppress(OSError):
            self.socket_path.unlink(missing_ok=True)
        self._remove_pid_file()

        self._stopped.set()
        log.info("daemon_stopped")

    async def handle_request(self, request: DaemonRequest) -> DaemonResponse:
        match request:
            case PingRequest():
                return DaemonResponse(success=True, output="pong")
            case StatusRequest():
                return self._status()
            case ShutdownRequest():
                asyncio.get_running_loop().call_later(SHUTDOWN_REPLY_DELAY_S, self.request_shutdown)
                return DaemonResponse(success=True, output="Shutting down")
            case DisconnectRequest():
                async with self._lock:
                    await self.supervisor.disconnect()
                return DaemonResponse(success=True, output="Disconnected", connected=False)
            case ConnectRequest():
                return await self._connect(request)
            case ExecuteRequest():
                return await self._execute(request)
            case CallRequest():
                return await self._call(request)
        return DaemonResponse.failure(f"Unknown request type: {request.type}")

    async def _connect(self, request: ConnectRequest) -> DaemonResponse:
        async with self._lock:
            try:
                state = await self.supervisor.connect(request.cpu_id, request.cpu_label)
            except (KosError, OSError) as e:
                return DaemonResponse.failure(str(e), connected=False)
            self.supervisor.set_preference(request.cpu_id, request.cpu_label)
            return DaemonResponse(
                success=True,
                output=f"Connected to {state.vessel_name}",
                **self._state_fields(),
            )

    async def _execute(self, request: ExecuteRequest) -> DaemonResponse:
        async with self._lock:
            try:
                connection = await self.supervisor.ensure_connected(request.cpu_id, request.cpu_label)
            except (KosError, OSError) as e:
                return DaemonResponse.failure(str(e), connected=False)

            result = await connection.execute(request.command, request.timeout)
            if not connection.is_connected():
                self.supervisor.forget()
            return DaemonResponse(
                success=result.success,
                output=result.output,
                error=result.error,
                **self._state_fields(),
            )

    async def _call(self, request: CallRequest) -> DaemonResponse:
        handler = self.registry.get(request.handler)
        if handler is None:
            return DaemonResponse.failure(f"Unknown handler: {request.handler}")

        async with self._lock:
            try:
                connection = await self.supervisor.ensure_connected(request.cpu_id, request.cpu_label)
            except (KosError, OSError) as e:
                return DaemonResponse.failure(str(e), connected=False)

            try:
                data = await handler.invoke(connection, request.args)
            except ValidationError as e:
                return DaemonResponse.failure(
                    f"Invalid arguments for {request.handler}: {describe_validation_error(e)}",
                    **self._state_fields(),
                )
            except Exception as e:
                log.warning("daemon_handler_failed", handler=request.handler, error=str(e))
                if is_transport_failure(e):
                    await self.supervisor.disconnect()
                return DaemonResponse.failure(str(e), **self._state_fields())

            if not connection.is_connected():
                self.supervisor.forget()
            return DaemonResponse(success=True, data=data, **self._state_fields())

    def _status(self) -> DaemonResponse:
        connection = self.supervisor.connection
        data: dict[str, Any] = {"activeClients": self._active_clients}
        if connection is not None:
            data["monitor"] = connection.monitor.summary()
            if connection.state.last_error:
                data["lastError"] = connection.state.last_error
        return DaemonResponse(success=True, data=data, **self._state_fields())

    def _state_fields(self) -> dict[str, Any]:
        state = self.supervisor.state()
        return {
            "connected": state.connected,
            "vessel": state.vessel_name,
            "cpu_id": state.cpu_id,
            "cpu_tag": state.cpu_tag,
        }

    async def _respond(self, line: bytes) -> DaemonResponse:
        try:
            request = parse_request(line)
        except ValidationError as e:
            return DaemonResponse.failure(f"Invalid request: {describe_validation_error(e)}")

        log.debug("daemon_request", type=request.type)
        try:
            return await self.handle_request(request)
        except Exception as e:
            log.error("daemon_request_failed", type=request.type, error=str(e))
            return DaemonResponse.failure(str(e))

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._active_clients += 1
        self._cancel_idle_timer()
        try:
            while not self._shutting_down:
                line = await reader.readline()
                if not line.endswith(b"\n"):
                    break
                if not line.strip():
                    continue
                response = await self._respond(line)
                writer.write(encode_response(response))
                await writer.drain()
        except (OSError, ValueError) as e:
            # ValueError: line longer than the stream limit
            log.info("daemon_client_error", error=str(e))
        finally:
            self._active_clients -= 1
            if self._active_clients == 0:
                self._reset_idle_timer()
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

    async def _claim_runtime_files(self) -> None:
        if self.socket_path.exists():
            if await probe_daemon(self.socket_path, self._settings.daemon.probe_timeout_ms):
                raise DaemonAlreadyRunningError(f"Another daemon is already listening on {self.socket_path}")
            log.info("daemon_stale_socket_removed", socket=str(self.socket_path))
            self.socket_path.unlink(missing_ok=True)

        if self.pid_path.exists():
            pid = read_pid(self.pid_path)
            if pid is not None and pid != os.getpid() and pid_alive(pid):
                raise DaemonAlreadyRunningError(f"Another daemon (PID {pid}) appears to be running")
            log.info("daemon_stale_pid_removed", pid=pid)
            self.pid_path.unlink(missing_ok=True)

    def _remove_pid_file(self) -> None:
        if read_pid(self.pid_path) == os.getpid():
            with contextlib.suppress(OSError):
                self.pid_path.unlink(missing_ok=True)

    def _reset_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self._shutting_down or self._server is None:
            return
        timeout = self._settings.daemon.idle_timeout_s
        if timeout > 0:
            self._idle_handle = asyncio.get_running_loop().call_later(timeout, self._on_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self._active_clients == 0:
            log.info("daemon_idle_shutdown", idle_timeout_s=self._settings.daemon.idle_timeout_s)
            self.request_shutdown()
