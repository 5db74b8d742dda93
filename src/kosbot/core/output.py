# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Command framing and output cleanup for the kOS terminal.

kOS drives its telnet terminal with characters from the Unicode Private Use
Area (U+E000-U+F8FF) instead of ANSI escapes. Most are single characters;
a few carry parameters:

- TELEPORTCURSOR (U+E006) and RESIZESCREEN (U+E016) are followed by two
  parameter characters
- TITLEBEGIN (U+E004) starts a window title that runs until TITLEEND (U+E005)
- STARTNEXTLINE, LINEFEEDKEEPCOL and GOTOLEFTEDGE act as line breaks
"""

from __future__ import annotations

import hashlib
import re
import time
from dataclasses import dataclass

from kosbot.constants import PROMPT

PUA_START = 0xE000
PUA_END = 0xF8FF

TITLE_BEGIN = 0xE004
TITLE_END = 0xE005
TELEPORT_CURSOR = 0xE006
START_NEXT_LINE = 0xE011
LINEFEED_KEEP_COL = 0xE012
GO_TO_LEFT_EDGE = 0xE013
RESIZE_SCREEN = 0xE016

_TWO_PARAM_COMMANDS = frozenset({TELEPORT_CURSOR, RESIZE_SCREEN})
_LINE_BREAK_COMMANDS = frozenset({START_NEXT_LINE, LINEFEED_KEEP_COL, GO_TO_LEFT_EDGE})

# C0 controls except \n
_CONTROL_CHARS = re.compile(r"[\x00-\x09\x0b-\x1f]")
_WHITESPACE = re.compile(r"\s+")

NOISE_PATTERNS = (
    re.compile(r"^\{.*detaching.*\}$", re.IGNORECASE),
    re.compile(r"^detaching from", re.IGNORECASE),
    re.compile(r"^connecting to cpu", re.IGNORECASE),
    re.compile(r"^choose a cpu", re.IGNORECASE),
    re.compile(r"^selecting cpu", re.IGNORECASE),
)

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def strip_unicode_commands(text: str) -> str:
    """Remove kOS terminal control characters together with their parameters."""
    result: list[str] = []
    i = 0
    length = len(text)

    while i < length:
        code = ord(text[i])
        if not PUA_START <= code <= PUA_END:
            result.append(text[i])
            i += 1
            continue

        if code in _TWO_PARAM_COMMANDS:
            i += 3
        elif code == TITLE_BEGIN:
            i += 1
            while i < length and ord(text[i]) != TITLE_END:
                i += 1
            i += 1
        elif code in _LINE_BREAK_COMMANDS:
            result.append("\n")
            i += 1
        else:
            i += 1

    return "".join(result)


def normalize_lines(text: str) -> str:
    """Unify line endings and drop remaining control characters."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _CONTROL_CHARS.sub("", text)


def _strip_echoes(line: str, commands: list[tuple[str, str]]) -> str:
    """Remove leading command echoes; several can be glued onto one line."""
    trimmed = line.strip()
    normalized = _WHITESPACE.sub(" ", trimmed)

    stripped = True
    while stripped and trimmed:
        stripped = False
        for raw, compact in commands:
            if normalized.startswith(compact):
                remainder = normalized[len(compact) :].strip()
            elif trimmed.startswith(raw):
                remainder = trimmed[len(raw) :].strip()
            else:
                continue
            trimmed = remainder
            normalized = _WHITESPACE.sub(" ", remainder)
            stripped = True
            break

    return trimmed


def is_noise(line: str) -> bool:
    return line == PROMPT or any(pattern.search(line) for pattern in NOISE_PATTERNS)


def clean_output(raw: str, commands: list[str], sentinel_token: str | None = None) -> str:
    """Turn raw terminal text into the command's actual output.

    Args:
        raw: Text as received from the transport
        commands: Every line that was sent, so their echoes can be removed
        sentinel_token: Completion marker to erase from the result

    Returns:
        Cleaned output, lines joined with ``\\n``
    """
    text = normalize_lines(strip_unicode_commands(raw))

    # kOS collapses runs of whitespace when it echoes input
    sent = [(cmd, _WHITESPACE.sub(" ", cmd).strip()) for cmd in commands if cmd and cmd.strip()]

    lines: list[str] = []
    for line in text.split("\n"):
        line = _strip_echoes(line, sent)
        if sentinel_token and sentinel_token in line:
            line = line.replace(sentinel_token, "").strip()
        if line and not is_noise(line):
            lines.append(line)

    cleaned = "\n".join(lines).strip()
    if sentinel_token and sentinel_token in cleaned:
        cleaned = cleaned.replace(sentinel_token, "").strip()
    return cleaned


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


@dataclass(frozen=True)
class Sentinel:
    """Single-use completion marker printed after a command."""

    token: str

    @property
    def command(self) -> str:
        return f'PRINT "{self.token}".'

    @property
    def pattern(self) -> re.Pattern[str]:
        # The echo of the PRINT has the token inside quotes; the result does not
        return re.compile(rf'(?<!"){re.escape(self.token)}')


class SentinelFactory:
    """Mints sentinels from a sequence number plus a hash of the command and clock."""

    def __init__(self) -> None:
        self._sequence = 0

    def create(self, command: str) -> Sentinel:
        digest = hashlib.sha1()
        digest.update(command.encode("utf-8"))
        digest.update(str(time.time_ns()).encode("ascii"))
        digest.update(str(self._sequence).encode("ascii"))
        token = f"__KOS_DONE_{_base36(self._sequence)}_{digest.hexdigest()[:8].upper()}__"
        self._sequence += 1
        return Sentinel(token)
