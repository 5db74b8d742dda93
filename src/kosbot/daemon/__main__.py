# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Entry point for ``python -m kosbot.daemon``."""

from __future__ import annotations

import asyncio
import sys

from kosbot.daemon.server import KosDaemon
from kosbot.logging import configure_logging
from kosbot.settings import Settings


def main() -> int:
    settings = Settings()
    settings.daemon.runtime_dir.mkdir(parents=True, exist_ok=True)
    # Spawned daemons have no terminal; keep their log next to the socket
    with settings.daemon.log_path.open("a", encoding="utf-8") as log_file:
        configure_logging(settings, stream=log_file)
        return asyncio.run(KosDaemon(settings).run())


if __name__ == "__main__":
    sys.exit(main())
