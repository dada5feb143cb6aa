"""Bounded retry-with-backoff policy, driven by RetryConfig via Tenacity."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    operation: str = "operation",
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    The final exception is re-raised once ``max_attempts`` is exhausted.
    Each scheduled retry is logged with *operation* for context.

    Usage::

        @with_retry(config.retry, operation="slack_delivery")
        async def deliver() -> None: ...
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        logger.warning(
            "retry_scheduled",
            operation=operation,
            attempt=state.attempt_number,
            max_attempts=config.max_attempts,
            wait_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
            error=str(exc) if exc is not None else None,
        )

    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_retry,
        reraise=True,
    )
