# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

from __future__ import annotations

import asyncio

import pytest

from kosbot.core.connection import NOT_CONNECTED, KosConnection, list_cpus
from kosbot.errors import CpuNotFoundError, KosUnreachableError, TransportError

from .mock_kos_server import MockKos


@pytest.mark.asyncio
async def test_connect_picks_first_cpu(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        conn = KosConnection(make_settings(server.port))
        state = await conn.connect()
        try:
            assert state.connected
            assert state.cpu_id == 1
            assert state.vessel_name == "Kerbal X"
            assert state.cpu_tag == "guidance"
            assert state.session_name == f"127.0.0.1:{server.port}"
            assert server.received[0] == "1"
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_connect_by_id_and_label(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        settings = make_settings(server.port)

        conn = KosConnection(settings)
        state = await conn.connect(2)
        assert state.cpu_id == 2
        assert state.cpu_tag == "(unnamed)"
        await conn.disconnect()

        conn = KosConnection(settings, cpu_label="GUIDANCE")
        state = await conn.connect()
        assert state.cpu_id == 1
        await conn.disconnect()


@pytest.mark.asyncio
async def test_connect_unknown_label(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        conn = KosConnection(make_settings(server.port))
        with pytest.raises(CpuNotFoundError, match="Available CPUs"):
            await conn.connect("nope")

        assert not conn.is_connected()
        assert conn.state.cpu_id is None
        assert "nope" in (conn.state.last_error or "")
        await conn.disconnect()


@pytest.mark.asyncio
async def test_connect_reboots_when_menu_missing(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        server.attached_on_connect = True
        conn = KosConnection(make_settings(server.port))
        state = await conn.connect()
        try:
            assert state.connected
            assert server.received[:2] == ["REBOOT.", "1"]
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_connect_gives_up_without_menu(make_settings) -> None:  # noqa: ANN001
    async with MockKos(mode="destroyed") as server:
        server.attached_on_connect = True
        conn = KosConnection(make_settings(server.port))
        with pytest.raises(KosUnreachableError, match="is KSP running"):
            await conn.connect()
        assert not conn.is_connected()
        await conn.disconnect()


@pytest.mark.asyncio
async def test_connect_refused(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        port = server.port
    conn = KosConnection(make_settings(port))

    with pytest.raises(TransportError):
        await conn.connect()
    assert conn.state.last_error
    await conn.disconnect()


@pytest.mark.asyncio
async def test_execute_returns_clean_output(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        conn = KosConnection(make_settings(server.port))
        await conn.connect()
        try:
            result = await conn.execute("PRINT 1+1.")
            assert result.success
            assert result.output == "2"
            assert result.error is None

            result = await conn.execute('PRINT "Hello Kerbin".')
            assert result.output == "Hello Kerbin"
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_execute_strips_terminal_control_codes(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        server.noise = True
        conn = KosConnection(make_settings(server.port))
        await conn.connect()
        try:
            result = await conn.execute("PRINT 6*7.")
            assert result.output == "42"
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_execute_reports_kos_errors(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        server.responses["PRINT SHIP:FOO."] = "Cannot find suffixed term FOO on VESSEL"
        conn = KosConnection(make_settings(server.port))
        await conn.connect()
        try:
            result = await conn.execute("PRINT SHIP:FOO.")
            assert not result.success
            assert result.error == "Unknown property or method"
            assert "Cannot find suffixed term" in result.output
            # A script error leaves the session usable
            assert conn.is_connected()
            assert conn.monitor.recent_lines()[-1].startswith("Cannot find suffixed term")
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_execute_when_not_connected(make_settings) -> None:  # noqa: ANN001
    conn = KosConnection(make_settings())

    result = await conn.execute("PRINT 1.")

    assert not result.success
    assert result.error == NOT_CONNECTED


@pytest.mark.asyncio
async def test_execute_after_remote_reset(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        conn = KosConnection(make_settings(server.port))
        await conn.connect()

        await server.drop_clients()
        await asyncio.sleep(0.05)
        result = await conn.execute("PRINT 1.")

        assert not result.success
        assert not conn.is_connected()
        assert conn.state.cpu_id is None
        assert conn.transport is None

        again = await conn.execute("PRINT 1.")
        assert again.error == NOT_CONNECTED


@pytest.mark.asyncio
async def test_concurrent_executes_do_not_interleave(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        conn = KosConnection(make_settings(server.port))
        await conn.connect()
        try:
            results = await asyncio.gather(*(conn.execute(f"PRINT {n}+1.") for n in range(4)))
            assert [r.output for r in results] == ["1", "2", "3", "4"]
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_fire_and_forget(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        conn = KosConnection(make_settings(server.port))
        await conn.connect()
        try:
            result = await conn.execute('KUNIVERSE:QUICKLOADFROM("x").', fire_and_forget=True)
            assert result.success
            assert result.output == ""
            await asyncio.sleep(0.05)
            assert server.received[-1] == 'KUNIVERSE:QUICKLOADFROM("x").'
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_signal_lost_output(make_settings) -> None:  # noqa: ANN001
    async with MockKos(mode="signal_lost") as server:
        conn = KosConnection(make_settings(server.port, timeouts={"command": 300}))
        await conn.connect()
        try:
            result = await conn.execute("PRINT 1.")
            assert not result.success
            assert result.error == "Radio blackout - vessel has lost signal"
        finally:
            await conn.disconnect()


@pytest.mark.asyncio
async def test_try_detach(make_settings) -> None:  # noqa: ANN001
    async with MockKos(mode="no_power") as server:
        conn = KosConnection(make_settings(server.port))
        await conn.connect()
        assert await conn.try_detach() is True
        await conn.disconnect()

        server.mode = "destroyed"
        conn = KosConnection(make_settings(server.port))
        await conn.connect()
        assert await conn.try_detach() is False
        await conn.disconnect()


@pytest.mark.asyncio
async def test_disconnect_twice(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        conn = KosConnection(make_settings(server.port))
        await conn.connect()

        await conn.disconnect()
        await conn.disconnect()

        assert not conn.is_connected()
        assert conn.transport is None


@pytest.mark.asyncio
async def test_list_cpus(make_settings) -> None:  # noqa: ANN001
    async with MockKos() as server:
        cpus = await list_cpus(make_settings(server.port))

    assert [(cpu.id, cpu.part_name, cpu.tag) for cpu in cpus] == [(1, "CX-4181", "guidance"), (2, "KAL9000", "")]
