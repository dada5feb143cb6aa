"""Per-account sync scheduler: connect, backfill once, poll, reconnect.

State machine::

    idle → connecting → backfilling → polling
              ↑              │            │
              └── reconnecting ←──────────┘   (any transport failure)

    any state → stopped                        (only via stop())

The scheduler exclusively owns its :class:`MailboxSession`; the session
is never handed to anything outside this loop.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from .config import AccountConfig, SyncPolicyConfig
from .exceptions import ProtocolError, TransportError
from .models import AccountStatus, BackfillWindow, FetchCriteria, RawRecord, SchedulerState
from .normalizer import normalize
from .pipeline import ProcessingPipeline
from .session import MailboxSession, connect

logger = structlog.get_logger()

SessionFactory = Callable[[AccountConfig, SyncPolicyConfig], Awaitable[MailboxSession]]
Clock = Callable[[], datetime]

UNSEEN = FetchCriteria(unseen_only=True)


def utcnow() -> datetime:
    return datetime.now(UTC)


class AccountScheduler:
    """Control loop for one account.

    Call :meth:`run` as a task; call :meth:`stop` to make it exit at its
    next suspension point or between folders/messages.
    """

    def __init__(
        self,
        account: AccountConfig,
        pipeline: ProcessingPipeline,
        policy: SyncPolicyConfig,
        *,
        session_factory: SessionFactory = connect,
        clock: Clock = utcnow,
    ) -> None:
        self._account = account
        self._pipeline = pipeline
        self._policy = policy
        self._session_factory = session_factory
        self._clock = clock

        self._state = SchedulerState.IDLE
        self._session: MailboxSession | None = None
        self._stop_event = asyncio.Event()
        self._backfilled = False
        # UIDs already handed to the pipeline (or skipped), per folder
        self._observed: dict[str, set[int]] = {}

        self._reconnect_attempts = 0
        self._last_poll_at: datetime | None = None
        self._last_error: str | None = None
        self._messages_processed = 0
        self._messages_skipped = 0

    # ------------------------------------------------------------------
    # Public properties (used by the manager and health checks)
    # ------------------------------------------------------------------

    @property
    def account_id(self) -> str:
        return self._account.id

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def backfilled(self) -> bool:
        return self._backfilled

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.is_authenticated

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def status(self) -> AccountStatus:
        return AccountStatus(
            account_id=self.account_id,
            state=self._state,
            connected=self.connected,
            backfilled=self._backfilled,
            last_poll_at=self._last_poll_at,
            messages_processed=self._messages_processed,
            messages_skipped=self._messages_skipped,
            reconnect_attempts=self._reconnect_attempts,
            last_error=self._last_error,
        )

    def stop(self) -> None:
        """Signal the loop to exit.  Returns immediately."""
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until :meth:`stop` is called; always ends in ``stopped``."""
        if self._state is SchedulerState.STOPPED:
            logger.warning("scheduler_already_stopped", account_id=self.account_id)
            return

        with structlog.contextvars.bound_contextvars(account_id=self.account_id):
            logger.info("account_sync_started", folders=list(self._account.folders))
            try:
                while not self.stopping:
                    try:
                        await self._serve()
                    except TransportError as exc:
                        await self._reconnect(exc)
                    except Exception as exc:
                        logger.exception("account_sync_error")
                        await self._reconnect(exc)
            finally:
                await self._close_session()
                self._set_state(SchedulerState.STOPPED)
                logger.info(
                    "account_sync_stopped",
                    messages_processed=self._messages_processed,
                    messages_skipped=self._messages_skipped,
                )

    async def _serve(self) -> None:
        self._set_state(SchedulerState.CONNECTING)
        self._session = await self._session_factory(self._account, self._policy)
        if self.stopping:
            return

        if not self._backfilled:
            self._set_state(SchedulerState.BACKFILLING)
            await self.backfill()
            if self.stopping:
                return

        self._set_state(SchedulerState.POLLING)
        while not self.stopping:
            await self.poll_once()
            self._reconnect_attempts = 0
            await self._wait(self._policy.poll_interval_seconds)

    async def _reconnect(self, exc: BaseException) -> None:
        self._reconnect_attempts += 1
        self._last_error = str(exc) or type(exc).__name__
        self._set_state(SchedulerState.RECONNECTING)
        # Never reuse a half-open handle
        await self._close_session()
        if self.stopping:
            return
        delay = self._policy.reconnect_delay(self._reconnect_attempts)
        logger.warning(
            "account_reconnecting",
            attempt=self._reconnect_attempts,
            delay_seconds=delay,
            error=self._last_error,
        )
        await self._wait(delay)

    # ------------------------------------------------------------------
    # Backfill & poll
    # ------------------------------------------------------------------

    def backfill_window(self) -> BackfillWindow:
        return BackfillWindow.ending_at(self._clock(), self._policy.backfill_days)

    async def backfill(self) -> None:
        """Fetch and process every message inside the look-back window.

        Marked complete only once every folder has been visited, so a
        transport failure part-way through re-runs the backfill after
        reconnecting; already-processed UIDs are not processed again.
        """
        session = self._require_session()
        window = self.backfill_window()
        criteria = window.criteria()
        logger.info(
            "backfill_started",
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
        )

        for folder in self._account.folders:
            if self.stopping:
                return
            try:
                await session.select_folder(folder)
                uids = await session.search_uids(criteria)
            except ProtocolError as exc:
                logger.warning("folder_sync_failed", folder=folder, phase="backfill", error=str(exc))
                continue

            observed = self._observed.setdefault(folder, set())
            records = await session.fetch(uid for uid in uids if uid not in observed)
            logger.info("backfill_folder_fetched", folder=folder, count=len(records))
            await self._process_records(folder, records, window=window)

        if not self.stopping:
            self._backfilled = True
            logger.info("backfill_complete")

    async def poll_once(self) -> None:
        """One poll tick over every folder.

        Raises :class:`TransportError` when the session is no longer
        valid, so the loop reconnects instead of polling a dead handle.
        """
        session = self._require_session()
        if not await session.is_alive():
            raise TransportError("session is no longer valid")

        for folder in self._account.folders:
            if self.stopping:
                return
            try:
                await session.select_folder(folder)
                unseen = await session.search_uids(UNSEEN)
            except ProtocolError as exc:
                logger.warning("folder_sync_failed", folder=folder, phase="poll", error=str(exc))
                continue

            observed = self._observed.setdefault(folder, set())
            # Forget UIDs that are no longer unseen so the set stays bounded
            observed &= set(unseen)
            fresh = [uid for uid in unseen if uid not in observed]
            if not fresh:
                continue

            records = await session.fetch(fresh)
            logger.info("poll_folder_fetched", folder=folder, count=len(records))
            await self._process_records(folder, records)

        self._last_poll_at = self._clock()

    async def _process_records(
        self,
        folder: str,
        records: list[RawRecord],
        *,
        window: BackfillWindow | None = None,
    ) -> None:
        observed = self._observed.setdefault(folder, set())
        for record in records:
            if self.stopping:
                return

            try:
                message = normalize(record, self.account_id, folder)
            except Exception:
                logger.exception("normalize_failed", uid=record.uid, folder=folder)
                message = None

            if message is None:
                observed.add(record.uid)
                self._messages_skipped += 1
                continue

            if window is not None and not window.contains(message.timestamp):
                logger.debug(
                    "backfill_out_of_window",
                    message_id=message.id,
                    timestamp=message.timestamp.isoformat(),
                )
                continue

            observed.add(record.uid)
            try:
                await self._pipeline.process(message)
            except Exception:
                logger.exception("message_processing_failed", message_id=message.id)
                continue
            self._messages_processed += 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self) -> MailboxSession:
        if self._session is None:
            raise TransportError("no open session")
        return self._session

    async def _close_session(self) -> None:
        if self._session is None:
            return
        session = self._session
        self._session = None
        await session.close()

    async def _wait(self, seconds: float) -> None:
        """Sleep for *seconds*, waking early if stop() is called."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0))

    def _set_state(self, state: SchedulerState) -> None:
        if state is self._state:
            return
        logger.debug("scheduler_state_changed", old=self._state.value, new=state.value)
        self._state = state
