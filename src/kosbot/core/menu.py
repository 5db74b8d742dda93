# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Parsing of the kOS CPU selection menu.

A menu line looks like::

    [1]   no    1     stick 1 (RC-L01(guidance))

i.e. ``[id] guiOpen telnetCount vesselName (PartName(tag))``.
"""

from __future__ import annotations

import re

from kosbot.core.models import CpuInfo
from kosbot.errors import CpuNotFoundError, NoCpuAvailableError

MENU_LINE = re.compile(r"\[\s*(\d+)\]\s+(\w+)\s+(\d+)\s+(.+?)\s+\(([^(]+)\(([^)]*)\)\)")
# Looser form used for label lookups: only the id and the innermost tag matter
TAG_LINE = re.compile(r"\[\s*(\d+)\].*\(([^()]*)\)\)")
LIST_LINE = re.compile(r"\[\s*(\d+)\].*\(([^)]+\([^)]+\))\)\s*$")
UNTAGGED_LINE = re.compile(r"\[\s*(\d+)\].*\(([^)]+)\(\)\)\s*$")
CPU_ID = re.compile(r"\[\s*(\d+)\]")


def parse_menu_line(line: str) -> CpuInfo | None:
    match = MENU_LINE.search(line)
    if not match:
        return None

    cpu_id, gui, telnets, vessel, part_name, tag = match.groups()
    return CpuInfo(
        id=int(cpu_id),
        vessel=vessel.strip(),
        part_name=part_name.strip(),
        tag=tag,
        gui_open=gui == "yes",
        telnets=int(telnets),
    )


def parse_menu(text: str) -> list[CpuInfo]:
    """Parse every CPU line in *text*, ignoring anything else."""
    return [cpu for line in text.splitlines() if (cpu := parse_menu_line(line))]


def find_cpu_by_label(text: str, label: str) -> int | None:
    """Return the id of the CPU whose tag equals *label* (case-insensitive)."""
    wanted = label.lower()
    for line in text.splitlines():
        match = TAG_LINE.search(line)
        if match and match.group(2).lower() == wanted:
            return int(match.group(1))
    return None


def first_cpu_id(text: str) -> int | None:
    match = CPU_ID.search(text)
    return int(match.group(1)) if match else None


def format_cpu_list(text: str) -> str:
    """Human-readable list of the CPUs in *text*, for error messages."""
    entries: list[str] = []
    for line in text.splitlines():
        if match := LIST_LINE.search(line):
            entries.append(f"  [{match.group(1)}] {match.group(2)}")
        elif match := UNTAGGED_LINE.search(line):
            entries.append(f"  [{match.group(1)}] {match.group(2)} (no tag)")
    return "\n".join(entries) if entries else "  (no CPUs found)"


def resolve_cpu(text: str, cpu_id: int | None = None, cpu_label: str | None = None) -> int:
    """Pick the CPU to attach to.

    An explicit id wins, then a label, then the first CPU listed.

    Raises:
        CpuNotFoundError: If *cpu_label* matches no menu line
        NoCpuAvailableError: If nothing was requested and the menu is empty
    """
    if cpu_id is not None and cpu_id > 0:
        return cpu_id

    if cpu_label:
        found = find_cpu_by_label(text, cpu_label)
        if found is None:
            raise CpuNotFoundError(cpu_label, format_cpu_list(text))
        return found

    found = first_cpu_id(text)
    if found is None:
        raise NoCpuAvailableError("No CPUs available in kOS menu")
    return found


def describe_cpu(text: str, cpu_id: int) -> tuple[str, str]:
    """Return ``(vessel_name, tag)`` for *cpu_id*, or ``Unknown`` placeholders."""
    for cpu in parse_menu(text):
        if cpu.id == cpu_id:
            return cpu.vessel, cpu.display_tag
    return "Unknown", "Unknown"
