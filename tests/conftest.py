# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from kosbot.settings import DaemonSettings, Settings, TimeoutSettings

# Short enough for a test run, long enough for a loopback round trip
FAST_TIMEOUTS = {
    "connect": 2_000,
    "cpu_menu": 1_000,
    "reboot": 1_000,
    "proceed": 500,
    "command": 1_000,
    "connect_delay": 50,
    "disconnect_delay": 0,
    "health_check": 300,
    "detach": 300,
    "post_connect_delay": 0,
}


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer KOS_* variables and .env files out of the tests."""
    for key in list(os.environ):
        if key.startswith("KOS_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def runtime_dir() -> Iterator[Path]:
    """Short temp dir: Unix socket paths are limited to ~100 bytes."""
    path = Path(tempfile.mkdtemp(prefix="kos"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def make_settings(runtime_dir: Path, tmp_path: Path) -> Callable[..., Settings]:
    """Build Settings with fast timeouts and an isolated runtime dir."""

    def factory(port: int = 5410, *, daemon: dict[str, Any] | None = None, **overrides: Any) -> Settings:
        timeouts = {**FAST_TIMEOUTS, **overrides.pop("timeouts", {})}
        daemon_opts = {"runtime_dir": runtime_dir, "idle_timeout_s": 30.0, "probe_timeout_ms": 300, **(daemon or {})}
        return Settings(
            host="127.0.0.1",
            port=port,
            trace_dir=tmp_path / "traces",
            timeouts=TimeoutSettings(**timeouts),
            daemon=DaemonSettings(**daemon_opts),
            **overrides,
        )

    return factory
