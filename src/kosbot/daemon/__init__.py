# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Connection daemon keeping a kOS terminal attached across commands."""

from __future__ import annotations

from kosbot.daemon.client import DaemonClient
from kosbot.daemon.handlers import HandlerRegistry, default_registry
from kosbot.daemon.protocol import DaemonResponse
from kosbot.daemon.server import KosDaemon

__all__ = ["DaemonClient", "DaemonResponse", "HandlerRegistry", "KosDaemon", "default_registry"]
