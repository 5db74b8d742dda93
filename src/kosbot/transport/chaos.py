# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Fault-injection transport wrapper (deterministic).

This is used for resilience testing. It wraps a real transport and injects
dead-channel errors and read stalls at deterministic intervals so tests of
the reconnect path are repeatable.
"""

from __future__ import annotations

import asyncio
import contextlib
import random

from kosbot.errors import TransportError
from kosbot.transport.base import Transport


class ChaosTransport(Transport):
    def __init__(
        self,
        inner: Transport,
        *,
        seed: int = 1,
        reset_every_n_sends: int = 0,
        stall_every_n_reads: int = 0,
        max_jitter_ms: int = 0,
        label: str = "chaos",
    ) -> None:
        super().__init__()
        self._inner = inner
        self._rng = random.Random(int(seed))
        self._reset_n = int(reset_every_n_sends or 0)
        self._stall_n = int(stall_every_n_reads or 0)
        self._max_jitter_ms = int(max_jitter_ms or 0)
        self._label = str(label or "chaos")
        self._tx_count = 0
        self._rx_count = 0

    async def init(self) -> None:
        await self._inner.init()
        self._open = True

    async def send(self, data: str) -> None:
        self._tx_count += 1
        if self._reset_n > 0 and (self._tx_count % self._reset_n) == 0:
            with contextlib.suppress(TransportError, OSError):
                await self._inner.close()
            self._open = False
            raise TransportError(f"{self._label}: ECONNRESET injected on send #{self._tx_count}")
        await self._inner.send(data)

    async def send_keys(self, keys: str) -> None:
        await self._inner.send_keys(keys)

    async def close(self) -> None:
        await self._inner.close()
        self._open = False

    def is_open(self) -> bool:
        return self._open and self._inner.is_open()

    async def _read_raw(self) -> str:
        self._rx_count += 1

        if self._max_jitter_ms > 0:
            await asyncio.sleep(self._rng.uniform(0.0, float(self._max_jitter_ms)) / 1000.0)

        if self._stall_n > 0 and (self._rx_count % self._stall_n) == 0:
            # Pretend nothing arrived this round
            return ""

        return await self._inner.read()

    async def _wait_for_data(self, timeout_s: float) -> None:
        await self._inner._wait_for_data(timeout_s)
