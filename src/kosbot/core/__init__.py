# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Protocol client: handshake, command framing, health and reconnect policy."""

from __future__ import annotations

from kosbot.core.connection import KosConnection, create_transport, list_cpus
from kosbot.core.health import ConnectionSupervisor, HealthCheckResult, HealthStatus, check_health
from kosbot.core.models import CommandResult, ConnectionState, CpuInfo

__all__ = [
    "CommandResult",
    "ConnectionState",
    "ConnectionSupervisor",
    "CpuInfo",
    "HealthCheckResult",
    "HealthStatus",
    "KosConnection",
    "check_health",
    "create_transport",
    "list_cpus",
]
