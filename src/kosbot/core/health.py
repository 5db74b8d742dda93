# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Connection health probing and the reconnect policy built on it.

kOS prints its "Signal lost" banner exactly once. Every probe after that
only shows the echoed command, which looks like any other silent
connection, so callers have to remember an earlier signal loss when they
interpret a later "no response".
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from collections.abc import Callable
from enum import StrEnum

import structlog
from pydantic import BaseModel

from kosbot.constants import SIGNAL_LOST_BANNER
from kosbot.core.connection import KosConnection
from kosbot.core.models import ConnectionState
from kosbot.errors import KosError, LivenessCause, LivenessError
from kosbot.settings import Settings

log = structlog.get_logger()

DEFAULT_WAIT_TIMEOUT_MS = 120_000
WAIT_POLL_INTERVAL_MS = 2_000


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    SIGNAL_LOST = "stale:signal_lost"
    NO_RESPONSE = "stale:no_response"
    ERROR = "stale:error"


class HealthCheckResult(BaseModel):
    status: HealthStatus
    output: str = ""

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY


def new_marker() -> str:
    return f"HEALTH_OK_{uuid.uuid4().hex[:8].upper()}"


def classify_health(output: str, success: bool, marker: str) -> HealthStatus:
    """Classify a probe's output. The signal-lost banner always wins."""
    if SIGNAL_LOST_BANNER.lower() in output.lower():
        return HealthStatus.SIGNAL_LOST

    # A real result shows the marker bare; the echo shows it quoted
    if success and re.search(rf'(?<!"){re.escape(marker)}(?!")', output):
        return HealthStatus.HEALTHY

    return HealthStatus.NO_RESPONSE


async def check_health(connection: KosConnection, timeout_ms: int | None = None) -> HealthCheckResult:
    """Probe *connection* with a uniquely-marked PRINT."""
    marker = new_marker()
    try:
        result = await connection.execute(f'PRINT "{marker}".', timeout_ms)
    except Exception as e:
        log.warning("kos_health_check_error", error=str(e))
        return HealthCheckResult(status=HealthStatus.ERROR)

    status = classify_health(result.output, result.success, marker)
    return HealthCheckResult(status=status, output=result.output)


def liveness_message(cause: LivenessCause, vessel: str) -> str:
    """User-facing explanation naming what resolves each cause."""
    if cause is LivenessCause.SIGNAL_LOST:
        return (
            f"Vessel '{vessel}' has lost radio signal - waiting to re-acquire. "
            "Wait for the vessel to regain line-of-sight to Kerbin or a relay."
        )
    if cause is LivenessCause.NO_POWER:
        return (
            f"Vessel '{vessel}' appears to have no power - connection works but no response. "
            "Wait for batteries to recharge or solar panels to receive sunlight."
        )
    return (
        f"Vessel '{vessel}' appears to have crashed - connection established but no response. "
        "Load a save or switch to another vessel."
    )


class ConnectionSupervisor:
    """Owns the single shared KosConnection and decides when to replace it."""

    def __init__(
        self,
        settings: Settings | None = None,
        connection_factory: Callable[..., KosConnection] | None = None,
    ) -> None:
        """Initialize supervisor.

        Args:
            settings: Settings instance (will be created if None)
            connection_factory: Called with ``cpu_id``/``cpu_label`` keywords to
                build a new connection (defaults to KosConnection)
        """
        self._settings = settings or Settings()
        self._factory = connection_factory or self._default_factory
        self._connection: KosConnection | None = None
        self._signal_lost_seen = False
        self._last_vessel: str | None = None
        self.cpu_id: int | None = None
        self.cpu_label: str | None = None

    @property
    def connection(self) -> KosConnection | None:
        return self._connection

    def state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState()
        return self._connection.state

    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_connected()

    def set_preference(self, cpu_id: int | None = None, cpu_label: str | None = None) -> None:
        """Remember which CPU later ensure_connected() calls should use."""
        self.cpu_id = cpu_id
        self.cpu_label = cpu_label

    async def connect(self, cpu_id: int | None = None, cpu_label: str | None = None) -> ConnectionState:
        """Replace any existing connection with a fresh one.

        Raises:
            KosError: If the handshake fails
        """
        await self.disconnect()
        self._connection = self._factory(cpu_id=cpu_id, cpu_label=cpu_label)
        try:
            return await self._connection.connect()
        except Exception:
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.disconnect()
            except (KosError, OSError) as e:
                log.warning("kos_disconnect_failed", error=str(e))

    def forget(self) -> None:
        """Drop the connection object without talking to the remote."""
        self._connection = None

    async def ensure_connected(
        self,
        cpu_id: int | None = None,
        cpu_label: str | None = None,
        *,
        retry: bool = False,
        timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS,
        poll_interval_ms: int = WAIT_POLL_INTERVAL_MS,
    ) -> KosConnection:
        """Return a usable connection, reconnecting when needed.

        Args:
            cpu_id: CPU to use (defaults to the stored preference)
            cpu_label: CPU tag to use (defaults to the stored preference)
            retry: Keep trying until *timeout_ms* (e.g. while KSP starts up)
            timeout_ms: Retry budget
            poll_interval_ms: Pause between retries

        Raises:
            LivenessError: If the vessel is out of signal, out of power or gone
            KosError: If connecting fails (or the retry budget runs out)
        """
        if not retry:
            return await self._try_connect(cpu_id, cpu_label)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        last_error: str | None = None
        while loop.time() < deadline:
            try:
                return await self._try_connect(cpu_id, cpu_label)
            except KosError as e:
                last_error = str(e)
                log.info("kos_not_ready", error=last_error)
            await asyncio.sleep(poll_interval_ms / 1000)

        raise KosError(
            f"Timeout waiting for kOS after {round(timeout_ms / 1000)}s. Last error: {last_error or 'Unknown'}"
        )

    async def _try_connect(self, cpu_id: int | None, cpu_label: str | None) -> KosConnection:
        cpu_id = cpu_id if cpu_id is not None else self.cpu_id
        cpu_label = cpu_label if cpu_label is not None else self.cpu_label

        connection = self._connection
        if connection is not None and connection.is_connected() and self._matches(connection, cpu_id, cpu_label):
            if not self._needs_probe(connection):
                return connection
            result = await check_health(connection, self._settings.timeouts.health_check)
            if result.healthy:
                return connection
            if result.status is HealthStatus.SIGNAL_LOST:
                self._signal_lost_seen = True
            log.info("kos_connection_stale", status=result.status.value)
            await self.disconnect()

        try:
            await self.connect(cpu_id, cpu_label)
            await asyncio.sleep(self._settings.timeouts.post_connect_delay / 1000)
            return await self._verify_fresh()
        except Exception:
            await self.disconnect()
            raise

    async def _verify_fresh(self) -> KosConnection:
        connection = self._connection
        if connection is None:
            raise KosError("Connection was dropped during connect")

        result = await check_health(connection, self._settings.timeouts.health_check)
        vessel = connection.state.vessel_name or self._last_vessel or "Unknown"

        if result.healthy:
            self._signal_lost_seen = False
            self._last_vessel = connection.state.vessel_name
            return connection

        if result.status is HealthStatus.SIGNAL_LOST or (
            result.status is HealthStatus.NO_RESPONSE and self._signal_lost_seen
        ):
            self._signal_lost_seen = True
            raise LivenessError(LivenessCause.SIGNAL_LOST, vessel, liveness_message(LivenessCause.SIGNAL_LOST, vessel))

        # Ctrl+D gets back to the menu when the CPU is merely unpowered
        if await connection.try_detach(self._settings.timeouts.detach):
            cause = LivenessCause.NO_POWER
        else:
            cause = LivenessCause.DESTROYED
            self._last_vessel = None
        raise LivenessError(cause, vessel, liveness_message(cause, vessel))

    def _matches(self, connection: KosConnection, cpu_id: int | None, cpu_label: str | None) -> bool:
        state = connection.state
        if cpu_id is not None and cpu_id > 0 and cpu_id != state.cpu_id:
            return False
        if cpu_label is not None and (state.cpu_tag or "").lower() != cpu_label.lower():
            return False
        return True

    def _needs_probe(self, connection: KosConnection) -> bool:
        idle_s = time.monotonic() - connection.last_activity
        return idle_s >= self._settings.daemon.reuse_health_check_after_s

    def _default_factory(self, *, cpu_id: int | None = None, cpu_label: str | None = None) -> KosConnection:
        return KosConnection(self._settings, cpu_id=cpu_id, cpu_label=cpu_label)
