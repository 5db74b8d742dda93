# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Connection manager for one kOS terminal session.

Handles the CPU-menu handshake, frames every command with a sentinel so its
output can be separated from echo and noise, and tracks whether the
session is still usable.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import time
from typing import Literal

import structlog

from kosbot.constants import CPU_MENU_MARKER, DETACH_KEY, PROCEED_MARKER, REBOOT_COMMAND
from kosbot.core.error_detection import ErrorDetector, KosErrorDetector
from kosbot.core.menu import describe_cpu, parse_menu, resolve_cpu
from kosbot.core.models import CommandResult, ConnectionState, CpuInfo
from kosbot.core.monitor import TerminalMonitor
from kosbot.core.output import Sentinel, SentinelFactory, clean_output
from kosbot.errors import KosError, KosUnreachableError, PatternTimeoutError, is_transport_failure
from kosbot.logging.trace import TransportTraceLogger
from kosbot.settings import Settings
from kosbot.transport.base import Transport
from kosbot.transport.chaos import ChaosTransport
from kosbot.transport.socket import SocketTransport
from kosbot.transport.tmux import TmuxTransport

log = structlog.get_logger()

TransportType = Literal["socket", "tmux"]

PROMPT_PATTERN = re.compile(r">\s*$")
MENU_PATTERN = re.compile(re.escape(CPU_MENU_MARKER), re.IGNORECASE)

# Pause after clearing the buffer before talking to kOS again
SETTLE_DELAY_S = 0.5

NOT_CONNECTED = "Not connected to kOS"


def create_transport(
    settings: Settings,
    *,
    host: str | None = None,
    port: int | None = None,
    transport_type: TransportType | None = None,
) -> Transport:
    """Build the configured transport with its trace sink.

    When ``settings.chaos`` is set the transport is wrapped in a
    ``ChaosTransport`` that injects resets and stalls.

    Raises:
        ValueError: If the transport type is unknown
    """
    host = host or settings.host
    port = port or settings.port
    kind = transport_type or settings.transport

    transport: Transport
    if kind == "socket":
        trace = TransportTraceLogger(f"socket-{host}-{port}", enabled=settings.trace, trace_dir=settings.trace_dir)
        transport = SocketTransport(
            host,
            port,
            connect_timeout_ms=settings.timeouts.connect,
            connect_delay_ms=settings.timeouts.connect_delay,
            trace=trace,
        )
    elif kind == "tmux":
        trace = TransportTraceLogger(
            f"tmux-{settings.tmux_session}", enabled=settings.trace, trace_dir=settings.trace_dir
        )
        transport = TmuxTransport(host, port, settings.tmux_session, trace=trace)
    else:
        raise ValueError(f"Unknown transport: {kind}")

    if settings.chaos is not None:
        chaos = settings.chaos.model_dump()
        log.warning("chaos_transport_enabled", transport=kind, **chaos)
        transport = ChaosTransport(transport, label=kind, **chaos)
    return transport


class KosConnection:
    """Protocol client for the kOS telnet terminal.

    Commands on one connection never overlap: kOS has no request ids, so
    output is attributed purely by order and a lock keeps it that way.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        host: str | None = None,
        port: int | None = None,
        cpu_id: int | None = None,
        cpu_label: str | None = None,
        transport_type: TransportType | None = None,
        transport: Transport | None = None,
        error_detector: ErrorDetector | None = None,
    ) -> None:
        """Initialize connection.

        Args:
            settings: Settings instance (will be created if None)
            host: kOS server host (defaults to settings)
            port: kOS server port (defaults to settings)
            cpu_id: CPU to attach to when connect() gets no selector
            cpu_label: CPU tag to attach to; wins over cpu_id
            transport_type: "socket" or "tmux" (defaults to settings)
            transport: Ready-made transport, overrides transport_type
            error_detector: Classifier for kOS error text
        """
        self._settings = settings or Settings()
        self.host = host or self._settings.host
        self.port = port or self._settings.port
        self._default_cpu_id = cpu_id if cpu_id is not None else self._settings.cpu_id
        self._default_cpu_label = cpu_label if cpu_label is not None else self._settings.cpu_label
        self._transport_type = transport_type
        self._provided_transport = transport
        self._transport: Transport | None = None
        self._state = ConnectionState()
        self._sentinels = SentinelFactory()
        self._detector = error_detector or KosErrorDetector()
        self._lock = asyncio.Lock()
        self.monitor = TerminalMonitor()
        self.last_activity = time.monotonic()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def transport(self) -> Transport | None:
        return self._transport

    def is_connected(self) -> bool:
        return self._state.connected

    async def connect(self, selector: int | str | None = None) -> ConnectionState:
        """Open the terminal and attach to a CPU.

        Args:
            selector: CPU id (int) or tag (str); falls back to the defaults
                given at construction, then to the first CPU in the menu

        Returns:
            The new connection state

        Raises:
            TransportError: If the server cannot be reached
            KosUnreachableError: If the CPU menu never appears
            CpuNotFoundError: If no CPU carries the requested tag
        """
        timeouts = self._settings.timeouts
        try:
            if self._transport is None:
                self._transport = self._create_transport()
            transport = self._transport
            await transport.init()

            try:
                menu = await transport.wait_for(CPU_MENU_MARKER, timeouts.cpu_menu)
            except PatternTimeoutError:
                # No menu: probably still attached to a CPU from an earlier session
                log.info("kos_menu_missing_rebooting", host=self.host, port=self.port)
                await transport.read()
                await asyncio.sleep(SETTLE_DELAY_S)
                await transport.send(REBOOT_COMMAND)
                try:
                    menu = await transport.wait_for(CPU_MENU_MARKER, timeouts.reboot)
                except PatternTimeoutError as e:
                    raise KosUnreachableError(
                        "Timeout waiting for kOS - is KSP running with kOS telnet enabled?"
                    ) from e

            cpu_id, cpu_label = self._selector(selector)
            target = resolve_cpu(menu, cpu_id, cpu_label)
            await transport.send(str(target))

            try:
                await transport.wait_for(PROCEED_MARKER, timeouts.proceed)
            except PatternTimeoutError:
                # Resuming an existing CPU session shows scrollback, not "Proceed"
                await transport.read()
                await asyncio.sleep(SETTLE_DELAY_S)

            vessel, tag = describe_cpu(menu, target)
            self._state = ConnectionState(
                connected=True,
                cpu_id=target,
                vessel_name=vessel,
                cpu_tag=tag,
                session_name=self._session_name(transport),
            )
        except Exception as e:
            self._state = ConnectionState(connected=False, last_error=str(e))
            log.warning("kos_connect_failed", host=self.host, port=self.port, error=str(e))
            raise

        self.last_activity = time.monotonic()
        log.info("kos_connected", cpu_id=target, vessel=vessel, cpu_tag=tag)
        return self._state

    async def execute(
        self,
        script: str,
        timeout_ms: int | None = None,
        *,
        fire_and_forget: bool = False,
    ) -> CommandResult:
        """Run *script* on the attached CPU.

        Remote errors and dead channels come back as failed results. A
        timed-out wait does not stop the script on the kOS side.

        Args:
            script: kOS script text
            timeout_ms: How long to wait for completion (defaults to settings)
            fire_and_forget: Send without waiting for output (for scripts that
                tear the session down, e.g. quickload)
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self._settings.timeouts.command
        if not self._state.connected or self._transport is None:
            return CommandResult(success=False, error=NOT_CONNECTED)

        async with self._lock:
            transport = self._transport
            if not self._state.connected or transport is None:
                return CommandResult(success=False, error=NOT_CONNECTED)

            sentinel: Sentinel | None = None
            try:
                await transport.read()
                if fire_and_forget:
                    await transport.send(script)
                    return CommandResult(success=True)

                sentinel = self._sentinels.create(script)
                await transport.send(script)
                await transport.send(sentinel.command)
                raw = await self._collect(transport, sentinel, timeout_ms)
            except (KosError, OSError) as e:
                return await self._fail(e)
            finally:
                self.last_activity = time.monotonic()

        cleaned = clean_output(raw, [script, sentinel.command], sentinel.token)
        self.monitor.track_output(cleaned)

        error = self._detector.detect_error(cleaned)
        if error:
            return CommandResult(success=False, output=cleaned, error=error)
        return CommandResult(success=True, output=cleaned)

    async def try_detach(self, timeout_ms: int | None = None) -> bool:
        """Send Ctrl+D and see whether the CPU menu comes back.

        Returns:
            True if the menu reappeared (the CPU was merely unresponsive,
            e.g. out of power), False if nothing answered (vessel gone)
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self._settings.timeouts.detach
        transport = self._transport
        if transport is None:
            return False

        async with self._lock:
            try:
                await transport.send_keys(DETACH_KEY)
                response = await transport.wait_for(MENU_PATTERN, timeout_ms)
            except (KosError, OSError):
                return False
        return bool(MENU_PATTERN.search(response))

    async def disconnect(self) -> None:
        """Close the terminal. Safe to call repeatedly."""
        transport, self._transport = self._transport, None
        was_connected = self._state.connected
        self._state = ConnectionState()
        if transport is not None:
            await transport.close()
            await asyncio.sleep(self._settings.timeouts.disconnect_delay / 1000)
        if was_connected:
            log.info("kos_disconnected", host=self.host, port=self.port)

    async def list_cpus(self) -> list[CpuInfo]:
        """List the CPUs offered by the menu using a throwaway transport."""
        return await list_cpus(self._settings, host=self.host, port=self.port, transport_type=self._transport_type)

    def _create_transport(self) -> Transport:
        if self._provided_transport is not None:
            return self._provided_transport
        return create_transport(self._settings, host=self.host, port=self.port, transport_type=self._transport_type)

    def _selector(self, selector: int | str | None) -> tuple[int | None, str | None]:
        if isinstance(selector, str):
            return None, selector
        if isinstance(selector, int):
            return selector, None
        if self._default_cpu_label:
            return None, self._default_cpu_label
        return self._default_cpu_id, None

    def _session_name(self, transport: Transport) -> str:
        if isinstance(transport, TmuxTransport):
            return transport.session_name
        return f"{self.host}:{self.port}"

    async def _collect(self, transport: Transport, sentinel: Sentinel, timeout_ms: int) -> str:
        try:
            return await transport.wait_for(sentinel.pattern, timeout_ms)
        except PatternTimeoutError:
            log.warning("kos_sentinel_timeout", token=sentinel.token, timeout_ms=timeout_ms)

        try:
            return await transport.wait_for(PROMPT_PATTERN, timeout_ms)
        except PatternTimeoutError:
            return await transport.read()

    async def _fail(self, error: BaseException) -> CommandResult:
        message = str(error)
        if is_transport_failure(error):
            log.warning("kos_transport_lost", error=message)
            transport, self._transport = self._transport, None
            self._state = ConnectionState(connected=False, last_error=message)
            if transport is not None:
                with contextlib.suppress(KosError, OSError):
                    await transport.close()
        else:
            self._state = self._state.model_copy(update={"last_error": message})
        return CommandResult(success=False, error=message)


async def list_cpus(
    settings: Settings,
    *,
    host: str | None = None,
    port: int | None = None,
    transport_type: TransportType | None = None,
    transport: Transport | None = None,
) -> list[CpuInfo]:
    """Connect just long enough to read the CPU menu."""
    transport = transport or create_transport(settings, host=host, port=port, transport_type=transport_type)
    try:
        await transport.init()
        menu = await transport.wait_for(CPU_MENU_MARKER, settings.timeouts.reboot)
        return parse_menu(menu)
    finally:
        await transport.close()
