# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Shared constants for kosbot."""

from __future__ import annotations

# Default kOS telnet server
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5410

# Remote console markers
CPU_MENU_MARKER = "Choose a CPU"
PROCEED_MARKER = "Proceed"
PROMPT = ">"
REBOOT_COMMAND = "REBOOT."
SIGNAL_LOST_BANNER = "Signal lost"

# Key sent to leave a CPU and return to the menu
DETACH_KEY = "C-d"

# Daemon filesystem names
SOCKET_NAME = "kos-daemon.sock"
PID_NAME = "kos-daemon.pid"
LOG_NAME = "kos-daemon.log"
