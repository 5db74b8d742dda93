# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""PID-file and socket liveness probes shared by the daemon and its clients."""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path

from kosbot.daemon.protocol import PingRequest, decode_response, encode_request

# Requests carry whole scripts; allow lines well beyond asyncio's 64 KiB default
STREAM_LIMIT = 4 * 1024 * 1024


def read_pid(path: Path) -> int | None:
    """Return the PID recorded in *path*, or None if missing or unreadable."""
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    """Signal-0 probe: checks the process exists without touching it."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else
        return True
    except OSError:
        return False
    return True


async def probe_daemon(socket_path: Path, timeout_ms: int) -> bool:
    """Return True if a daemon answers a ping on *socket_path*."""
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(socket_path), limit=STREAM_LIMIT),
            timeout=timeout_ms / 1000,
        )
    except (OSError, TimeoutError):
        return False

    try:
        writer.write(encode_request(PingRequest()))
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout=timeout_ms / 1000)
        return decode_response(line).success
    except (OSError, TimeoutError, ValueError):
        return False
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
