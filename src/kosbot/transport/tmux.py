# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""tmux-backed transport for watching a kOS session by hand.

A detached tmux session runs ``nc host port``; commands go in through
``send-keys`` and output comes back from ``capture-pane``. Attach with
``tmux attach -t <session>`` to see exactly what the client sees.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from kosbot.constants import DEFAULT_HOST, DEFAULT_PORT
from kosbot.errors import TransportError
from kosbot.logging.trace import TransportTraceLogger
from kosbot.transport.base import Transport

log = structlog.get_logger()

DEFAULT_SESSION = "kosbot-kos"
DEFAULT_SEND_DELAY_MS = 100
CAPTURE_HISTORY_LINES = 500


class TmuxTransport(Transport):
    """Runs `nc` inside a tmux session so the kOS terminal can be watched live."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        session_name: str = DEFAULT_SESSION,
        *,
        send_delay_ms: int = DEFAULT_SEND_DELAY_MS,
        trace: TransportTraceLogger | None = None,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.session_name = session_name
        self._send_delay_ms = send_delay_ms
        self._trace = trace or TransportTraceLogger(f"tmux-{session_name}")
        self._pane_id: str | None = None
        self._last_capture_length = 0

    async def init(self) -> None:
        await self._kill_session()

        await self._tmux("new-session", "-d", "-s", self.session_name)
        panes = await self._tmux("list-panes", "-t", self.session_name, "-F", "#{pane_id}")
        self._pane_id = panes.strip().splitlines()[0]
        self._last_capture_length = 0

        await self.send(f"nc {self.host} {self.port}")
        self._trace.log_info(f"tmux session {self.session_name} connecting to {self.host}:{self.port}")
        self._open = True
        log.info("tmux_connected", session=self.session_name, host=self.host, port=self.port)

    async def send(self, data: str) -> None:
        if not self._pane_id:
            raise TransportError("Transport not initialized")

        line = data.rstrip("\r\n")
        await self._tmux("send-keys", "-t", self._pane_id, "-l", line)
        await self._tmux("send-keys", "-t", self._pane_id, "Enter")
        self._trace.log_send(line + "\n")

        # kOS garbles input that arrives faster than it echoes
        if self._send_delay_ms > 0:
            await asyncio.sleep(self._send_delay_ms / 1000)

    async def send_keys(self, keys: str) -> None:
        if not self._pane_id:
            raise TransportError("Transport not initialized")

        await self._tmux("send-keys", "-t", self._pane_id, keys)
        self._trace.log_send(f"[keys] {keys}")

    async def close(self) -> None:
        if self._open:
            with contextlib.suppress(TransportError):
                await self.send_keys("C-d")
                await asyncio.sleep(0.3)
            await self._kill_session()
            log.info("tmux_disconnected", session=self.session_name)

        self._pane_id = None
        self._open = False
        self._buffer = ""
        self._last_capture_length = 0
        self._trace.log_info("tmux transport closed")
        self._trace.close()

    async def _read_raw(self) -> str:
        if not self._pane_id:
            return ""

        try:
            captured = await self._tmux(
                "capture-pane", "-t", self._pane_id, "-p", "-S", f"-{CAPTURE_HISTORY_LINES}"
            )
        except TransportError:
            return ""

        # Only hand back what appeared since the last capture
        if len(captured) <= self._last_capture_length:
            return ""
        new_content = captured[self._last_capture_length :]
        self._last_capture_length = len(captured)
        self._trace.log_receive(new_content)
        return new_content

    async def _kill_session(self) -> None:
        with contextlib.suppress(TransportError):
            await self._tmux("kill-session", "-t", self.session_name)

    async def _tmux(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "tmux",
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TransportError("tmux not found on PATH") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise TransportError(f"tmux {args[0]} failed: {stderr.decode(errors='replace').strip()}")
        return stdout.decode("utf-8", errors="replace")
