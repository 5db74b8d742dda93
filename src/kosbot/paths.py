# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Filesystem paths for the daemon runtime files and trace logs."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from platformdirs import user_log_dir

from kosbot.constants import PID_NAME, SOCKET_NAME

ENV_TRACE_DIR = "KOS_TRACE_DIR"


def default_runtime_dir() -> Path:
    """Directory holding the daemon socket and PID file."""
    return Path(tempfile.gettempdir())


def default_trace_dir() -> Path:
    """Get the default directory for transport trace logs."""
    env_dir = os.getenv(ENV_TRACE_DIR)
    if env_dir:
        return Path(env_dir)
    return Path(user_log_dir("kosbot", "kosbot"))


def socket_path(runtime_dir: Path) -> Path:
    return runtime_dir / SOCKET_NAME


def pid_path(runtime_dir: Path) -> Path:
    return runtime_dir / PID_NAME
