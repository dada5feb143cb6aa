"""Entry point for the sync service.

Usage::

    python -m inboxsync
"""

from __future__ import annotations

import asyncio

from .config import ServiceConfig
from .service import SyncService


def main() -> None:
    config = ServiceConfig()
    service = SyncService(config)
    try:
        asyncio.run(service.run())
    except asyncio.CancelledError:
        # Forced by a repeated shutdown signal
        raise SystemExit(1) from None


if __name__ == "__main__":
    main()
