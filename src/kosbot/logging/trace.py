# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""JSONL trace of raw transport traffic.

Enabled with ``KOS_TRACE=1``. Each record carries the text, its UTF-8 byte
length and a short SHA-1 so that two traces can be diffed for the exact
bytes exchanged with kOS. A disabled logger never touches the filesystem.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from io import TextIOWrapper


class TransportTraceLogger:
    """Append-only JSONL writer for SEND/RECV/INFO/ERROR events."""

    def __init__(self, context: str, *, enabled: bool = False, trace_dir: Path | None = None) -> None:
        """Initialize trace logger.

        Args:
            context: Short label for the transport (e.g. ``socket-127.0.0.1-5410``)
            enabled: Whether to write anything at all
            trace_dir: Directory for trace files (required when enabled)
        """
        self._context = context
        self._file: TextIOWrapper | None = None
        self._path: Path | None = None

        if not enabled or trace_dir is None:
            return

        trace_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        safe_context = "".join(c if c.isalnum() or c in "-_" else "-" for c in context)
        self._path = trace_dir / f"kos-trace-{safe_context}-{stamp}-{uuid.uuid4().hex[:8]}.jsonl"
        self._file = self._path.open("a", encoding="utf-8")
        self._write("START", {"context": context})

    @property
    def enabled(self) -> bool:
        return self._file is not None

    @property
    def path(self) -> Path | None:
        return self._path

    def log_send(self, data: str | bytes) -> None:
        self._write("SEND", _payload(data))

    def log_receive(self, data: str | bytes) -> None:
        self._write("RECV", _payload(data))

    def log_info(self, message: str) -> None:
        self._write("INFO", {"text": message})

    def log_error(self, error: BaseException | str) -> None:
        if isinstance(error, BaseException):
            message = f"{type(error).__name__}: {error}"
        else:
            message = error
        self._write("ERROR", {"text": message})

    def close(self) -> None:
        if self._file is None:
            return
        self._write("END", {})
        self._file.close()
        self._file = None

    def _write(self, event: str, data: dict[str, Any]) -> None:
        if self._file is None:
            return
        record = {"ts": time.time(), "ctx": self._context, "event": event, **data}
        self._file.write(json.dumps(record, ensure_ascii=True) + "\n")
        self._file.flush()


def _payload(data: str | bytes) -> dict[str, Any]:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return {
        "text": raw.decode("utf-8", errors="replace"),
        "bytes": len(raw),
        "sha1": hashlib.sha1(raw).hexdigest()[:8],
    }
