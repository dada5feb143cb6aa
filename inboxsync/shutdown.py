"""SIGTERM / SIGINT handling for the sync service.

The first signal requests a graceful stop: schedulers finish their current
message and sessions are logged out.  A second signal while that is still
in progress cancels the service task outright.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(
    shutdown_event: asyncio.Event,
    *,
    force_task: asyncio.Task | None = None,
) -> Callable[[signal.Signals], None]:
    """Wire SHUTDOWN_SIGNALS to *shutdown_event* on the running loop.

    *force_task* is cancelled on a repeated signal; it defaults to the
    calling task.  Returns the installed handler.
    """
    loop = asyncio.get_running_loop()
    target = force_task or asyncio.current_task()

    def _handle(sig: signal.Signals) -> None:
        if not shutdown_event.is_set():
            logger.info("shutdown_signal_received", signal=sig.name)
            shutdown_event.set()
            return

        logger.warning("shutdown_forced", signal=sig.name)
        if target is not None and not target.done():
            target.cancel()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _handle, sig)
    return _handle
