# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Exception hierarchy for kosbot."""

from __future__ import annotations

from enum import StrEnum

# Message fragments that mean the underlying channel is gone
_TRANSPORT_FAILURE_MARKERS = (
    "epipe",
    "econnreset",
    "econnrefused",
    "connection refused",
    "connection reset",
    "broken pipe",
    "closed",
)


class KosError(Exception):
    """Base class for all kosbot errors."""


class TransportError(KosError, ConnectionError):
    """The duplex channel to the kOS server failed or is closed."""


class PatternTimeoutError(KosError, TimeoutError):
    """A wait-for-pattern expired.

    The text buffered so far is kept on ``output`` since partial output is
    often the only clue about what the remote was doing.
    """

    def __init__(self, pattern: str, timeout_ms: int, output: str = "") -> None:
        super().__init__(f"Timeout waiting for pattern: {pattern}")
        self.pattern = pattern
        self.timeout_ms = timeout_ms
        self.output = output


class KosUnreachableError(KosError, ConnectionError):
    """The CPU menu never appeared, even after a reboot."""


class CpuNotFoundError(KosError, LookupError):
    def __init__(self, label: str, available: str) -> None:
        super().__init__(f"CPU with label '{label}' not found. Available CPUs:\n{available}")
        self.label = label


class NoCpuAvailableError(KosError):
    """The CPU menu lists no CPUs."""


class LivenessCause(StrEnum):
    SIGNAL_LOST = "signal_lost"
    NO_POWER = "no_power"
    DESTROYED = "destroyed"


class LivenessError(KosError):
    """The vessel stopped answering; ``cause`` says which of the known reasons applies."""

    def __init__(self, cause: LivenessCause, vessel: str, message: str) -> None:
        super().__init__(message)
        self.cause = cause
        self.vessel = vessel


class DaemonError(KosError):
    """Base class for daemon lifecycle and messaging errors."""


class DaemonAlreadyRunningError(DaemonError):
    pass


class DaemonStartError(DaemonError):
    pass


class DaemonProtocolError(DaemonError):
    """The daemon closed the socket or sent something that is not a response."""


def is_transport_failure(exc: BaseException) -> bool:
    """Return True when *exc* means the channel to the remote died."""
    if isinstance(exc, TimeoutError):
        return False
    if isinstance(exc, ConnectionError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSPORT_FAILURE_MARKERS)
