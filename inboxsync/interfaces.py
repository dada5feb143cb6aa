"""Abstract interfaces for the collaborators the pipeline calls out to.

The pipeline only knows these ABCs; concrete adapters (Elasticsearch,
OpenAI, Slack, webhooks, WebSocket) live in their own modules and can be
swapped without touching the orchestration.
"""

from __future__ import annotations

import abc

from inboxsync_schema import Classification, ClassificationLabel, Message, NotificationEvent


class IndexStore(abc.ABC):
    """Searchable message store."""

    async def start(self) -> None:
        """Open connections / bootstrap the index.  Optional."""

    async def stop(self) -> None:
        """Release connections.  Optional."""

    async def ping(self) -> bool:
        """Return whether the store is reachable.  Used by ``/health``."""
        return True

    @abc.abstractmethod
    async def upsert(self, message: Message) -> None:
        """Insert or update *message*, keyed by ``message.id``.

        Must be idempotent: repeating an identical upsert leaves the
        store in the same observable state.
        """
        ...

    @abc.abstractmethod
    async def update_classification(
        self,
        message_id: str,
        label: ClassificationLabel,
        confidence: float,
        rationale: str | None = None,
    ) -> None:
        """Record a classification result on an indexed message."""
        ...


class Classifier(abc.ABC):
    """Automated classification engine."""

    async def start(self) -> None:
        """Create clients.  Optional."""

    async def stop(self) -> None:
        """Release clients.  Optional."""

    @abc.abstractmethod
    async def classify(self, message: Message) -> Classification | None:
        """Classify *message*.

        Returns ``None`` when the engine is unavailable and raises when
        it answers with something unusable.
        """
        ...


class NotificationChannel(abc.ABC):
    """One outbound notification channel (chat, generic callback, ...)."""

    name: str = "channel"

    async def start(self) -> None:
        """Create clients.  Optional."""

    async def stop(self) -> None:
        """Release clients.  Optional."""

    @abc.abstractmethod
    async def deliver(self, event: NotificationEvent) -> None:
        """Deliver *event*; raise on failure so the caller can retry.

        Called at-least-once: receivers must tolerate duplicates.
        """
        ...


class LiveBroadcaster(abc.ABC):
    """Push channel to connected live viewers."""

    @abc.abstractmethod
    async def publish(self, message: Message, classification: Classification | None) -> None:
        """Publish *message* to every connected viewer, fire-and-forget."""
        ...
