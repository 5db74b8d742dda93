# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Application settings."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kosbot.constants import DEFAULT_HOST, DEFAULT_PORT, LOG_NAME
from kosbot.paths import default_runtime_dir, default_trace_dir, pid_path, socket_path


class TimeoutSettings(BaseModel):
    """Protocol timeouts and delays, in milliseconds."""

    connect: int = 10_000
    cpu_menu: int = 5_000
    reboot: int = 8_000
    proceed: int = 3_000
    command: int = 30_000
    connect_delay: int = 500
    disconnect_delay: int = 200
    health_check: int = 1_500
    detach: int = 2_000
    post_connect_delay: int = 500


class ChaosSettings(BaseModel):
    """Deterministic fault injection wrapped around the live transport."""

    seed: int = 1
    reset_every_n_sends: int = 0
    stall_every_n_reads: int = 0
    max_jitter_ms: int = 0


class DaemonSettings(BaseModel):
    runtime_dir: Path = Field(default_factory=default_runtime_dir)
    idle_timeout_s: float = 30.0
    spawn_retry_delay_ms: int = 200
    max_spawn_retries: int = 15
    connect_timeout_ms: int = 5_000
    probe_timeout_ms: int = 1_000
    # Reused connections idle longer than this are probed before use
    reuse_health_check_after_s: float = 10.0

    @property
    def socket_path(self) -> Path:
        return socket_path(self.runtime_dir)

    @property
    def pid_path(self) -> Path:
        return pid_path(self.runtime_dir)

    @property
    def log_path(self) -> Path:
        return self.runtime_dir / LOG_NAME


class Settings(BaseSettings):
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cpu_id: int | None = None
    cpu_label: str | None = None
    transport: Literal["socket", "tmux"] = "socket"
    tmux_session: str = "kosbot-kos"
    log_level: str = "WARNING"
    trace: bool = False
    trace_dir: Path = Field(default_factory=default_trace_dir)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    daemon: DaemonSettings = Field(default_factory=DaemonSettings)
    # Only for resilience testing; None leaves the transport untouched
    chaos: ChaosSettings | None = None

    model_config = SettingsConfigDict(
        env_prefix="KOS_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )
