# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""structlog setup shared by the CLI and the daemon.

Log records never go to stdout: the CLI prints command output there. The
daemon has no terminal at all, so it hands in its own log file.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from kosbot.settings import Settings

__all__ = ["configure_logging", "get_logger"]


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(settings: Settings | None = None, *, stream: TextIO | None = None) -> None:
    """Configure structlog once at process start.

    Args:
        settings: Settings instance (will be created if None); ``log_level``
            comes from ``KOS_LOG_LEVEL``
        stream: Destination for log lines (defaults to the current stderr)
    """
    if settings is None:
        from kosbot.settings import Settings

        settings = Settings()

    if stream is None:
        # Looked up per logger so redirected stderr (tests, CliRunner) is honoured
        def factory(*args: object) -> structlog.PrintLogger:
            return structlog.PrintLogger(file=sys.stderr)
    else:
        factory = structlog.PrintLoggerFactory(file=stream)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=stream is None and sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level(settings.log_level)),
        logger_factory=factory,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)
