# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio

from kosbot.daemon.client import DaemonClient
from kosbot.daemon.server import KosDaemon
from kosbot.errors import DaemonAlreadyRunningError
from kosbot.settings import Settings

from .mock_kos_server import MockKos, MockKosServer


@pytest_asyncio.fixture
async def kos() -> AsyncIterator[MockKosServer]:
    async with MockKos() as server:
        yield server


@pytest_asyncio.fixture
async def settings(kos: MockKosServer, make_settings: Callable[..., Settings]) -> Settings:
    return make_settings(kos.port)


@pytest_asyncio.fixture
async def daemon(settings: Settings) -> AsyncIterator[KosDaemon]:
    daemon = KosDaemon(settings)
    await daemon.start()
    yield daemon
    await daemon.shutdown()


async def raw_request(daemon: KosDaemon, line: str) -> dict[str, Any]:
    reader, writer = await asyncio.open_unix_connection(str(daemon.socket_path))
    try:
        writer.write(line.encode("utf-8") + b"\n")
        await writer.drain()
        return json.loads(await reader.readline())
    finally:
        writer.close()
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_ping(daemon: KosDaemon) -> None:
    assert await raw_request(daemon, '{"type":"ping"}') == {"success": True, "output": "pong"}


@pytest.mark.asyncio
async def test_start_writes_runtime_files(daemon: KosDaemon) -> None:
    assert daemon.socket_path.exists()
    assert daemon.pid_path.read_text() == str(os.getpid())
    assert daemon.is_serving


@pytest.mark.asyncio
async def test_execute_connects_on_demand(daemon: KosDaemon) -> None:
    response = await raw_request(daemon, '{"type":"execute","command":"PRINT 1+1.","timeout":2000}')

    assert response["success"] is True
    assert response["output"] == "2"
    assert response["connected"] is True
    assert response["cpuId"] == 1
    assert response["cpuTag"] == "guidance"
    assert response["vessel"] == "Kerbal X"


@pytest.mark.asyncio
async def test_execute_reports_script_errors(daemon: KosDaemon, kos: MockKosServer) -> None:
    kos.responses["PRINT SHIP:FOO."] = "Cannot find suffixed term FOO on VESSEL"

    response = await DaemonClient(daemon.settings).execute("PRINT SHIP:FOO.")

    assert not response.success
    assert response.error == "Unknown property or method"
    assert response.connected is True


@pytest.mark.asyncio
async def test_reconnects_after_reset(daemon: KosDaemon, kos: MockKosServer) -> None:
    client = DaemonClient(daemon.settings)
    assert (await client.execute("PRINT 1+1.")).output == "2"

    await kos.drop_clients()
    await asyncio.sleep(0.05)
    failed = await client.execute("PRINT 2+2.")
    assert not failed.success
    assert failed.connected is False

    status = await client.status()
    assert status.connected is False

    recovered = await client.execute("PRINT 2+2.")
    assert recovered.success
    assert recovered.output == "4"
    assert kos.connections == 2


@pytest.mark.asyncio
async def test_connect_and_disconnect(daemon: KosDaemon) -> None:
    client = DaemonClient(daemon.settings)

    connected = await client.connect(cpu_label="guidance")
    assert connected.success
    assert connected.connected is True
    assert connected.cpu_id == 1

    status = await client.status()
    assert status.connected is True
    assert status.data["monitor"].startswith("No errors")

    disconnected = await client.disconnect()
    assert disconnected.success
    assert disconnected.connected is False
    assert (await client.status()).connected is False


@pytest.mark.asyncio
async def test_connect_unknown_label(daemon: KosDaemon) -> None:
    response = await DaemonClient(daemon.settings).connect(cpu_label="nope")

    assert not response.success
    assert "CPU with label 'nope' not found" in (response.error or "")
    assert response.connected is False


@pytest.mark.asyncio
async def test_connect_preference_applies_to_later_executes(daemon: KosDaemon) -> None:
    client = DaemonClient(daemon.settings)
    await client.connect(cpu_id=2)
    await client.disconnect()

    response = await client.execute("PRINT 1.")
    assert response.cpu_id == 2


@pytest.mark.asyncio
async def test_liveness_failure_is_reported(daemon: KosDaemon, kos: MockKosServer) -> None:
    kos.mode = "no_power"

    response = await DaemonClient(daemon.settings).execute("PRINT 1.")

    assert not response.success
    assert "no power" in (response.error or "")
    assert response.connected is False


@pytest.mark.asyncio
async def test_concurrent_clients_are_serialized(daemon: KosDaemon) -> None:
    client = DaemonClient(daemon.settings)

    responses = await asyncio.gather(*(client.execute(f"PRINT {n}*10.") for n in range(1, 5)))

    assert [r.output for r in responses] == ["10", "20", "30", "40"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "line",
    [
        "not json",
        '{"type":"bogus"}',
        '{"type":"execute"}',
        '{"type":"execute","command":""}',
        '{"command":"PRINT 1."}',
    ],
)
async def test_invalid_requests(daemon: KosDaemon, line: str) -> None:
    response = await raw_request(daemon, line)

    assert response["success"] is False
    assert response["error"].startswith("Invalid request")


@pytest.mark.asyncio
async def test_several_requests_on_one_connection(daemon: KosDaemon) -> None:
    reader, writer = await asyncio.open_unix_connection(str(daemon.socket_path))
    try:
        writer.write(b'{"type":"ping"}\n\n{"type":"status"}\n')
        await writer.drain()
        first = json.loads(await reader.readline())
        second = json.loads(await reader.readline())
    finally:
        writer.close()
        await writer.wait_closed()

    assert first["output"] == "pong"
    assert second["data"]["activeClients"] == 1


@pytest.mark.asyncio
async def test_call_unknown_handler(daemon: KosDaemon, kos: MockKosServer) -> None:
    response = await DaemonClient(daemon.settings).call("nope")

    assert not response.success
    assert response.error == "Unknown handler: nope"
    assert kos.connections == 0


@pytest.mark.asyncio
async def test_call_builtin_handlers(daemon: KosDaemon) -> None:
    client = DaemonClient(daemon.settings)

    executed = await client.call("execute", {"command": "PRINT 3+4."})
    assert executed.success
    assert executed.data["success"] is True
    assert executed.data["output"] == "7"

    state = await client.call("state")
    assert state.data["connected"] is True
    assert state.data["cpu_id"] == 1

    recent = await client.call("recent_output", {"count": 1})
    assert recent.data["recent_lines"] == ["7"]

    health = await client.call("health")
    assert health.data["status"] == "healthy"

    cpus = await client.call("list_cpus")
    assert [cpu["id"] for cpu in cpus.data] == [1, 2]


@pytest.mark.asyncio
async def test_call_with_bad_arguments(daemon: KosDaemon) -> None:
    response = await DaemonClient(daemon.settings).call("execute", {"timeout": -1})

    assert not response.success
    assert response.error.startswith("Invalid arguments for execute")


@pytest.mark.asyncio
async def test_custom_handler(settings: Settings) -> None:
    daemon = KosDaemon(settings)

    @daemon.registry.register_handler("vessel_name")
    async def vessel_name(conn, args) -> str:  # noqa: ANN001
        return conn.state.vessel_name

    await daemon.start()
    try:
        response = await DaemonClient(settings).call("vessel_name")
        assert response.data == "Kerbal X"
    finally:
        await daemon.shutdown()


@pytest.mark.asyncio
async def test_second_daemon_refuses_to_start(daemon: KosDaemon, settings: Settings) -> None:
    pid_before = daemon.pid_path.read_text()

    with pytest.raises(DaemonAlreadyRunningError):
        await KosDaemon(settings).start()

    assert daemon.pid_path.read_text() == pid_before
    assert (await raw_request(daemon, '{"type":"ping"}'))["success"] is True


@pytest.mark.asyncio
async def test_run_returns_one_when_already_running(daemon: KosDaemon, settings: Settings) -> None:
    assert await KosDaemon(settings).run() == 1


@pytest.mark.asyncio
async def test_stale_runtime_files_are_replaced(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    settings.daemon.socket_path.write_text("stale")
    settings.daemon.pid_path.write_text("999999")
    monkeypatch.setattr("kosbot.daemon.server.pid_alive", lambda pid: False)

    daemon = KosDaemon(settings)
    await daemon.start()
    try:
        assert daemon.pid_path.read_text() == str(os.getpid())
        assert (await raw_request(daemon, '{"type":"ping"}'))["output"] == "pong"
    finally:
        await daemon.shutdown()


@pytest.mark.asyncio
async def test_live_pid_file_blocks_start(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    settings.daemon.pid_path.write_text("4242")
    monkeypatch.setattr("kosbot.daemon.server.pid_alive", lambda pid: True)

    with pytest.raises(DaemonAlreadyRunningError, match="PID 4242"):
        await KosDaemon(settings).start()
    assert settings.daemon.pid_path.read_text() == "4242"


@pytest.mark.asyncio
async def test_shutdown_request(daemon: KosDaemon, kos: MockKosServer) -> None:
    client = DaemonClient(daemon.settings)
    await client.execute("PRINT 1.")

    response = await client.shutdown()
    assert response.output == "Shutting down"

    await asyncio.wait_for(daemon.wait_stopped(), timeout=2)
    assert not daemon.socket_path.exists()
    assert not daemon.pid_path.exists()
    assert not daemon.supervisor.is_connected()
    assert not client.is_running()


@pytest.mark.asyncio
async def test_idle_timeout(make_settings: Callable[..., Settings], kos: MockKosServer) -> None:
    settings = make_settings(kos.port, daemon={"idle_timeout_s": 0.3})
    daemon = KosDaemon(settings)
    await daemon.start()

    # An open client keeps the daemon alive
    reader, writer = await asyncio.open_unix_connection(str(daemon.socket_path))
    await asyncio.sleep(0.6)
    assert daemon.is_serving
    writer.close()
    await writer.wait_closed()

    await asyncio.wait_for(daemon.wait_stopped(), timeout=2)
    assert not daemon.socket_path.exists()
