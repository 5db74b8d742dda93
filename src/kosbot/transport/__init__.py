# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Transport layer for kOS terminal connections."""

from __future__ import annotations

from kosbot.transport.base import Transport
from kosbot.transport.socket import SocketTransport
from kosbot.transport.tmux import TmuxTransport

__all__ = ["SocketTransport", "TmuxTransport", "Transport"]
