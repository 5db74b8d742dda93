# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Logging layer for kOS sessions."""

from __future__ import annotations

from kosbot.logging.config import configure_logging, get_logger
from kosbot.logging.trace import TransportTraceLogger

__all__ = ["TransportTraceLogger", "configure_logging", "get_logger"]
