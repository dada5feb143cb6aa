"""SyncManager: owns one scheduler task per configured account."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from .config import AccountConfig, SyncPolicyConfig
from .models import AccountStatus
from .pipeline import ProcessingPipeline
from .scheduler import AccountScheduler, Clock, SessionFactory, utcnow
from .session import connect

logger = structlog.get_logger()


class SyncManager:
    """Start, stop and report on every account's sync loop.

    The registry of schedulers is written only by :meth:`start` and
    :meth:`stop`; schedulers share nothing else with each other.
    """

    def __init__(
        self,
        accounts: Iterable[AccountConfig],
        pipeline: ProcessingPipeline,
        policy: SyncPolicyConfig,
        *,
        session_factory: SessionFactory = connect,
        clock: Clock = utcnow,
    ) -> None:
        self._accounts = list(accounts)
        self._pipeline = pipeline
        self._policy = policy
        self._session_factory = session_factory
        self._clock = clock

        self._schedulers: dict[str, AccountScheduler] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    @property
    def schedulers(self) -> dict[str, AccountScheduler]:
        return dict(self._schedulers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch one scheduler per account that has credentials.

        Accounts without credentials (or with a duplicate id) are skipped
        with a warning; they never prevent other accounts from starting.
        """
        if self.is_running:
            logger.warning("sync_manager_already_running")
            return

        for account in self._accounts:
            if not account.has_credentials:
                logger.warning("account_skipped", account_id=account.id, reason="missing_credentials")
                continue
            if account.id in self._schedulers:
                logger.warning("account_skipped", account_id=account.id, reason="duplicate_id")
                continue

            scheduler = AccountScheduler(
                account,
                self._pipeline,
                self._policy,
                session_factory=self._session_factory,
                clock=self._clock,
            )
            self._schedulers[account.id] = scheduler
            self._tasks[account.id] = asyncio.create_task(
                scheduler.run(),
                name=f"inboxsync-{account.id}",
            )

        logger.info("sync_manager_started", accounts=sorted(self._schedulers))

    async def stop(self) -> None:
        """Stop every scheduler and wait for each loop to finish.

        Loops that do not acknowledge within the shutdown timeout are
        cancelled and awaited, so no loop outlives this call.  Calling
        ``stop()`` when not running is a no-op.
        """
        if not self.is_running:
            return

        logger.info("sync_manager_stopping", accounts=sorted(self._schedulers))
        for scheduler in self._schedulers.values():
            scheduler.stop()

        tasks = list(self._tasks.values())
        _, pending = await asyncio.wait(tasks, timeout=self._policy.shutdown_timeout_seconds)
        for task in pending:
            logger.warning("scheduler_cancelled", task=task.get_name())
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for account_id, task in self._tasks.items():
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error("scheduler_failed", account_id=account_id, error=str(exc))

        self._tasks.clear()
        self._schedulers.clear()
        logger.info("sync_manager_stopped")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, bool]:
        """Per account: is its session currently authenticated."""
        return {account_id: s.connected for account_id, s in self._schedulers.items()}

    def details(self) -> dict[str, AccountStatus]:
        return {account_id: s.status() for account_id, s in self._schedulers.items()}
