# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Abstract base class for kOS terminal transports."""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod

from kosbot.errors import PatternTimeoutError

# Named keys understood by send_keys(); transports map them to their own encoding
KEY_BYTES: dict[str, str] = {
    "C-c": "\x03",
    "C-d": "\x04",
    "C-z": "\x1a",
    "Enter": "\r\n",
    "Escape": "\x1b",
}


class Transport(ABC):
    """Duplex text channel to the kOS terminal server (socket, tmux, etc).

    Subclasses only move bytes. Buffering and pattern waiting live here so
    every implementation frames output the same way.
    """

    poll_interval_s: float = 0.1

    def __init__(self) -> None:
        self._buffer = ""
        self._open = False

    @abstractmethod
    async def init(self) -> None:
        """Open the channel.

        Raises:
            TransportError: If the remote is unreachable within the connect timeout
        """

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one line of text; the line terminator is added by the transport.

        Raises:
            TransportError: If not open or the write fails
        """

    @abstractmethod
    async def send_keys(self, keys: str) -> None:
        """Send a named key (see ``KEY_BYTES``) or raw keystrokes without a terminator."""

    @abstractmethod
    async def close(self) -> None:
        """Detach gracefully and tear down the channel.

        Should be idempotent - safe to call multiple times.
        """

    @abstractmethod
    async def _read_raw(self) -> str:
        """Return text received since the last call (may be empty)."""

    async def _wait_for_data(self, timeout_s: float) -> None:
        """Block until more data may be available. Default: poll."""
        await asyncio.sleep(min(self.poll_interval_s, timeout_s))

    def is_open(self) -> bool:
        return self._open

    async def read(self) -> str:
        """Drain and return everything buffered so far without waiting."""
        self._buffer += await self._read_raw()
        output, self._buffer = self._buffer, ""
        return output

    async def wait_for(self, pattern: str | re.Pattern[str], timeout_ms: int) -> str:
        """Wait until the buffer contains *pattern*.

        A ``str`` pattern is matched literally; pass a compiled regex for
        anything fancier. On a match the whole buffer is returned and cleared.
        On timeout the buffer is kept and a copy travels on the exception.

        Raises:
            PatternTimeoutError: If the pattern does not show up in time
            TransportError: If the channel dies while waiting
        """
        regex = re.compile(re.escape(pattern)) if isinstance(pattern, str) else pattern
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000

        while True:
            self._buffer += await self._read_raw()
            if regex.search(self._buffer):
                output, self._buffer = self._buffer, ""
                return output

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PatternTimeoutError(regex.pattern, timeout_ms, self._buffer)
            await self._wait_for_data(remaining)
