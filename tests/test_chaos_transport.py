# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

from __future__ import annotations

import pytest

from kosbot.core.connection import KosConnection, create_transport
from kosbot.errors import PatternTimeoutError, TransportError
from kosbot.settings import Settings
from kosbot.transport.base import Transport
from kosbot.transport.chaos import ChaosTransport
from kosbot.transport.socket import SocketTransport

from .mock_kos_server import MockKos


class DummyTransport(Transport):
    def __init__(self) -> None:
        super().__init__()
        self.sent: list[str] = []
        self.pending = ""

    async def init(self) -> None:
        self._open = True

    async def send(self, data: str) -> None:
        if not self._open:
            raise TransportError("Transport not initialized")
        self.sent.append(data)
        self.pending += "hello"

    async def send_keys(self, keys: str) -> None:
        self.sent.append(keys)

    async def close(self) -> None:
        self._open = False

    async def _read_raw(self) -> str:
        data, self.pending = self.pending, ""
        return data


@pytest.mark.asyncio
async def test_chaos_resets_every_n_sends() -> None:
    inner = DummyTransport()
    transport = ChaosTransport(inner, seed=1, reset_every_n_sends=2, label="t")
    await transport.init()

    await transport.send("one")
    assert inner.is_open()

    with pytest.raises(TransportError, match="ECONNRESET injected on send #2"):
        await transport.send("two")
    assert not inner.is_open()
    assert not transport.is_open()
    assert inner.sent == ["one"]


@pytest.mark.asyncio
async def test_chaos_stall_hides_data_for_one_read() -> None:
    inner = DummyTransport()
    transport = ChaosTransport(inner, seed=1, stall_every_n_reads=1, label="t")
    await transport.init()
    await transport.send("x")

    with pytest.raises(PatternTimeoutError):
        await transport.wait_for("hello", 50)
    assert inner.pending == "hello"


@pytest.mark.asyncio
async def test_chaos_passthrough() -> None:
    inner = DummyTransport()
    transport = ChaosTransport(inner, seed=3, max_jitter_ms=2)
    await transport.init()
    await transport.send("x")

    assert await transport.wait_for("hello", 500) == "hello"


@pytest.mark.asyncio
async def test_injected_reset_marks_connection_disconnected(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        settings = make_settings(server.port, chaos={"reset_every_n_sends": 3})
        conn = KosConnection(settings)
        await conn.connect()
        assert conn.is_connected()

        # Sends 2 (script) and 3 (sentinel); the sentinel send is reset
        result = await conn.execute("PRINT 1+1.")

        assert not result.success
        assert "ECONNRESET" in (result.error or "")
        assert not conn.is_connected()
        assert conn.state.last_error == result.error
        await conn.disconnect()


def test_create_transport_wraps_when_chaos_configured(make_settings) -> None:  # noqa: ANN001
    assert isinstance(create_transport(make_settings()), SocketTransport)

    transport = create_transport(make_settings(chaos={"seed": 7, "stall_every_n_reads": 4}))

    assert isinstance(transport, ChaosTransport)
    assert isinstance(transport._inner, SocketTransport)
    assert transport._stall_n == 4


def test_chaos_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KOS_CHAOS__RESET_EVERY_N_SENDS", "5")

    settings = Settings()

    assert settings.chaos is not None
    assert settings.chaos.reset_every_n_sends == 5
    assert settings.chaos.seed == 1
