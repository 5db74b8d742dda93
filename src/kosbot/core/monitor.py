# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Recent-output tracking and error-loop detection for one connection."""

from __future__ import annotations

import re
from collections import Counter, deque

from pydantic import BaseModel

MAX_LINES = 100
LOOP_WINDOW = 20
LOOP_THRESHOLD = 5

ERROR_LINE_PATTERNS = (
    re.compile(r"Error:", re.IGNORECASE),
    re.compile(r"Exception", re.IGNORECASE),
    re.compile(r"GET Suffix.*not found", re.IGNORECASE),
    re.compile(r"SET Suffix.*not found", re.IGNORECASE),
    re.compile(r"Tried to push Infinity", re.IGNORECASE),
    re.compile(r"null reference", re.IGNORECASE),
    re.compile(r"^kOS: "),
)


class MonitorStatus(BaseModel):
    recent_lines: list[str]
    has_errors: bool
    is_looping: bool
    error_pattern: str | None
    error_count: int
    last_error: str | None


def is_error_line(line: str) -> bool:
    return any(pattern.search(line) for pattern in ERROR_LINE_PATTERNS)


def normalize_error(line: str) -> str:
    """Reduce an error line to its shape so repeats with different values count together."""
    line = re.sub(r"\d+", "N", line)
    line = re.sub(r"'[^']*'", "'X'", line)
    line = re.sub(r'"[^"]*"', '"X"', line)
    return line[:100]


class TerminalMonitor:
    def __init__(self, max_lines: int = MAX_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._error_counts: Counter[str] = Counter()
        self._last_error: str | None = None

    def track_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        self._lines.append(line)
        if is_error_line(line):
            self._error_counts[normalize_error(line)] += 1
            self._last_error = line

    def track_output(self, output: str) -> None:
        for line in output.splitlines():
            self.track_line(line)

    def detect_loop(self) -> str | None:
        """Return the repeating error shape if one dominates the recent window."""
        window = list(self._lines)[-LOOP_WINDOW:]
        counts = Counter(normalize_error(line) for line in window if is_error_line(line))
        if not counts:
            return None
        pattern, count = counts.most_common(1)[0]
        return pattern if count >= LOOP_THRESHOLD else None

    def recent_lines(self, count: int = 50) -> list[str]:
        if count <= 0:
            return []
        return list(self._lines)[-count:]

    @property
    def error_count(self) -> int:
        return sum(self._error_counts.values())

    def status(self) -> MonitorStatus:
        loop = self.detect_loop()
        return MonitorStatus(
            recent_lines=self.recent_lines(),
            has_errors=bool(self._error_counts),
            is_looping=loop is not None,
            error_pattern=loop,
            error_count=self.error_count,
            last_error=self._last_error,
        )

    def summary(self) -> str:
        loop = self.detect_loop()
        if loop is not None:
            return f'ERROR LOOP DETECTED: "{loop}" ({self.error_count} total errors)'
        if self.error_count:
            return f'{self.error_count} errors detected, last: "{self._last_error}"'
        return f"No errors ({len(self._lines)} lines tracked)"

    def clear(self) -> None:
        self._lines.clear()
        self._error_counts.clear()
        self._last_error = None
