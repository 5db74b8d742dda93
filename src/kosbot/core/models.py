# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Value types shared by the protocol client and the daemon."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, model_validator


class ConnectionState(BaseModel):
    """Snapshot of a KosConnection. ``connected=False`` always means no CPU is selected."""

    model_config = ConfigDict(frozen=True)

    connected: bool = False
    cpu_id: int | None = None
    vessel_name: str | None = None
    cpu_tag: str | None = None
    session_name: str | None = None
    last_error: str | None = None

    @model_validator(mode="after")
    def _disconnected_has_no_cpu(self) -> ConnectionState:
        if not self.connected and self.cpu_id is not None:
            raise ValueError("a disconnected state cannot carry a cpu_id")
        return self


class CommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    output: str = ""
    error: str | None = None


class CpuInfo(BaseModel):
    """One line of the kOS CPU menu: ``[id] gui telnets vessel (Part(tag))``."""

    id: int
    vessel: str
    part_name: str
    tag: str
    gui_open: bool
    telnets: int

    @property
    def display_tag(self) -> str:
        return self.tag or "(unnamed)"
