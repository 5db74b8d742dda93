# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Classification of kOS error text.

kOS reports script errors as ordinary terminal output, so failures are
recognised by matching known phrases against the cleaned output.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Protocol


class ErrorPattern(NamedTuple):
    key: str
    pattern: re.Pattern[str]
    message: str


def _p(key: str, regex: str, message: str) -> ErrorPattern:
    return ErrorPattern(key, re.compile(regex, re.IGNORECASE), message)


# Checked in order; the first match wins
KOS_ERROR_PATTERNS: tuple[ErrorPattern, ...] = (
    _p("signal_lost", r"Signal lost\.\s+Waiting to re-acquire signal", "Radio blackout - vessel has lost signal"),
    _p("unknown_method", r"Cannot find suffixed term", "Unknown property or method"),
    _p("aborted", r"Program aborted", "kOS program was aborted"),
    _p("syntax_error", r"Syntax error", "kOS syntax error"),
    _p("type_mismatch", r"Cannot (perform|do) .* on", "Type mismatch in operation"),
    _p("no_node", r"No such node", "Maneuver node does not exist"),
    _p("no_target", r"No target", "No target set"),
    _p("connection_refused", r"Connection refused", "Connection refused - is KSP running?"),
    _p("unreachable", r"Unable to connect", "Unable to connect to kOS server"),
)


class ErrorDetector(Protocol):
    """Anything that can turn terminal text into an error message."""

    def detect_error(self, text: str) -> str | None:
        ...


class KosErrorDetector:
    """Ordered table of known kOS error phrases.

    Extra patterns registered with ``add_error_pattern`` are checked after
    the built-in ones.
    """

    def __init__(self, patterns: tuple[ErrorPattern, ...] = KOS_ERROR_PATTERNS) -> None:
        self.error_patterns: list[ErrorPattern] = list(patterns)

    def add_error_pattern(self, key: str, regex: str, message: str) -> None:
        """Register an additional error phrase.

        Args:
            key: Identifier for this error type
            regex: Case-insensitive regular expression to search for
            message: Message reported when it matches
        """
        self.error_patterns.append(_p(key, regex, message))

    def classify(self, text: str) -> ErrorPattern | None:
        for entry in self.error_patterns:
            if entry.pattern.search(text):
                return entry
        return None

    def detect_error(self, text: str) -> str | None:
        entry = self.classify(text)
        return entry.message if entry else None
