# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Raw TCP transport to the kOS telnet server."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import socket
from typing import TYPE_CHECKING

import structlog

from kosbot.constants import DEFAULT_HOST, DEFAULT_PORT
from kosbot.errors import TransportError
from kosbot.logging.trace import TransportTraceLogger
from kosbot.transport.base import KEY_BYTES, Transport

if TYPE_CHECKING:
    from asyncio import StreamReader, StreamWriter

log = structlog.get_logger()

DEFAULT_CONNECT_TIMEOUT_MS = 10_000
DEFAULT_CONNECT_DELAY_MS = 500
READ_CHUNK = 4096


class SocketTransport(Transport):
    """TCP transport. A background pump task collects everything kOS sends."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        connect_delay_ms: int = DEFAULT_CONNECT_DELAY_MS,
        trace: TransportTraceLogger | None = None,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self._connect_timeout_ms = connect_timeout_ms
        self._connect_delay_ms = connect_delay_ms
        self._trace = trace or TransportTraceLogger(f"socket-{host}-{port}")
        self._reader: StreamReader | None = None
        self._writer: StreamWriter | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._incoming: list[str] = []
        self._data_event = asyncio.Event()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def init(self) -> None:
        """Open the TCP connection and start the receive pump.

        Raises:
            TransportError: If connection fails or times out
        """
        if self._writer:
            await self._teardown()

        self._trace.log_info(f"connecting to {self.host}:{self.port}")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self._connect_timeout_ms / 1000,
            )
        except TimeoutError as e:
            self._trace.log_error(e)
            raise TransportError(f"Connection timeout after {self._connect_timeout_ms}ms") from e
        except OSError as e:
            self._trace.log_error(e)
            raise TransportError(f"Socket error: {e}") from e

        sock = self._writer.get_extra_info("socket")
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        self._open = True
        self._pump_task = asyncio.create_task(self._pump())
        log.info("socket_connected", host=self.host, port=self.port)

        # kOS sends its banner and menu shortly after accept
        await asyncio.sleep(self._connect_delay_ms / 1000)

    async def send(self, data: str) -> None:
        payload = data.rstrip("\r\n") + "\r\n"
        await self._write(payload, "Send error")

    async def send_keys(self, keys: str) -> None:
        await self._write(KEY_BYTES.get(keys, keys), "SendKeys error")

    async def close(self) -> None:
        """Send Ctrl+D to detach from the CPU, then close the socket."""
        if self._writer and self._open:
            with contextlib.suppress(ConnectionError, OSError, RuntimeError):
                self._writer.write(KEY_BYTES["C-d"].encode("utf-8"))
                await self._writer.drain()
                await asyncio.sleep(0.1)

        await self._teardown()
        self._trace.log_info("transport closed")
        self._trace.close()

    def peek_buffer(self) -> str:
        """Return received-but-unread text without consuming it."""
        return self._buffer + "".join(self._incoming)

    def clear_buffer(self) -> None:
        self._buffer = ""
        self._incoming.clear()

    async def _read_raw(self) -> str:
        if self._incoming:
            chunk = "".join(self._incoming)
            self._incoming.clear()
            self._data_event.clear()
            return chunk
        if not self._open:
            raise TransportError("Socket connection closed")
        self._data_event.clear()
        return ""

    async def _wait_for_data(self, timeout_s: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._data_event.wait(), timeout=timeout_s)

    async def _write(self, payload: str, what: str) -> None:
        if not self._writer or not self._open:
            raise TransportError("Transport not initialized")

        self._trace.log_send(payload)
        try:
            self._writer.write(payload.encode("utf-8"))
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            self._open = False
            self._trace.log_error(e)
            raise TransportError(f"{what}: {e}") from e

    async def _pump(self) -> None:
        reader = self._reader
        if reader is None:
            return
        try:
            while True:
                chunk = await reader.read(READ_CHUNK)
                if not chunk:
                    self._trace.log_info("socket ended")
                    break
                self._trace.log_receive(chunk)
                self._incoming.append(self._decoder.decode(chunk))
                self._data_event.set()
        except (ConnectionError, OSError) as e:
            self._trace.log_error(e)
            log.info("socket_error", host=self.host, port=self.port, error=str(e))
        finally:
            self._open = False
            self._data_event.set()

    async def _teardown(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError, RuntimeError):
                await writer.wait_closed()
            log.info("socket_disconnected", host=self.host, port=self.port)

        self._open = False
        self._buffer = ""
        self._incoming.clear()
        self._data_event.clear()
        self._decoder.reset()
