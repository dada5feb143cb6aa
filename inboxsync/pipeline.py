"""Processing pipeline: index → classify → notify → broadcast, per message."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from inboxsync_schema import (
    Classification,
    ClassificationLabel,
    EventType,
    Message,
    NotificationEvent,
)

from .config import RetryConfig
from .interfaces import Classifier, IndexStore, LiveBroadcaster, NotificationChannel
from .retry import with_retry

logger = structlog.get_logger()


class ProcessingPipeline:
    """Run the ordered stage sequence for one freshly observed message.

    Stages run strictly in order.  Each stage's failure (including a
    timeout) is caught and logged at that stage only, so a later stage
    always runs: a message that fails indexing is still classified and
    broadcast.  Only notification delivery is retried; every other stage
    is attempted once per message occurrence.
    """

    def __init__(
        self,
        index_store: IndexStore,
        classifier: Classifier,
        channels: Sequence[NotificationChannel],
        broadcaster: LiveBroadcaster,
        *,
        actionable_label: ClassificationLabel = ClassificationLabel.INTERESTED,
        retry: RetryConfig | None = None,
        stage_timeout_seconds: float = 15.0,
    ) -> None:
        self._index_store = index_store
        self._classifier = classifier
        self._channels = list(channels)
        self._broadcaster = broadcaster
        self._actionable_label = actionable_label
        self._retry = retry or RetryConfig()
        self._timeout = stage_timeout_seconds

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def process(self, message: Message) -> None:
        await self._index(message)

        classification = await self._classify(message)
        if classification is not None:
            message = message.with_classification(classification)
            if classification.label == self._actionable_label:
                await self._notify(message, classification)

        await self._broadcast(message, classification)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _index(self, message: Message) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                await self._index_store.upsert(message)
        except Exception as exc:
            logger.error("index_failed", message_id=message.id, error=_describe(exc))
            return
        logger.info("message_indexed", message_id=message.id, folder=message.folder)

    async def _classify(self, message: Message) -> Classification | None:
        try:
            async with asyncio.timeout(self._timeout):
                classification = await self._classifier.classify(message)
        except Exception as exc:
            logger.warning("classify_failed", message_id=message.id, error=_describe(exc))
            return None

        if classification is None:
            logger.debug("classifier_unavailable", message_id=message.id)
            return None

        logger.info(
            "message_classified",
            message_id=message.id,
            label=classification.label.value,
            confidence=classification.confidence,
        )

        try:
            async with asyncio.timeout(self._timeout):
                await self._index_store.update_classification(
                    message.id,
                    classification.label,
                    classification.confidence,
                    classification.rationale,
                )
        except Exception as exc:
            logger.error(
                "classification_index_update_failed",
                message_id=message.id,
                error=_describe(exc),
            )
        return classification

    async def _notify(self, message: Message, classification: Classification) -> None:
        if not self._channels:
            return
        event = NotificationEvent(
            event=EventType.EMAIL_CATEGORIZED,
            message=message,
            classification=classification,
        )
        # Channels are independent: one slow or failing channel never
        # holds back delivery to another.
        await asyncio.gather(*(self._dispatch(channel, event) for channel in self._channels))

    async def _dispatch(self, channel: NotificationChannel, event: NotificationEvent) -> None:
        @with_retry(self._retry, operation=f"{channel.name}_delivery")
        async def _attempt() -> None:
            async with asyncio.timeout(self._timeout):
                await channel.deliver(event)

        try:
            await _attempt()
        except Exception as exc:
            logger.error(
                "notification_delivery_failed",
                channel=channel.name,
                message_id=event.message.id,
                attempts=self._retry.max_attempts,
                error=_describe(exc),
            )
            return
        logger.info("notification_delivered", channel=channel.name, message_id=event.message.id)

    async def _broadcast(self, message: Message, classification: Classification | None) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                await self._broadcaster.publish(message, classification)
        except Exception as exc:
            logger.warning("broadcast_failed", message_id=message.id, error=_describe(exc))


def _describe(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "timed out"
    return str(exc) or type(exc).__name__
