"""SyncService: wires collaborators together and hosts the sync loops."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Sequence
from typing import Any

import structlog
import uvicorn

from .api import create_app
from .broadcast import WebSocketBroadcaster
from .classifier import OpenAIClassifier
from .config import ServiceConfig
from .index_store import ElasticsearchIndexStore
from .interfaces import Classifier, IndexStore, NotificationChannel
from .logging import setup_logging
from .manager import SyncManager
from .models import ServiceStatus
from .notifiers import SlackChannel, WebhookChannel
from .pipeline import ProcessingPipeline
from .scheduler import SessionFactory
from .session import connect
from .shutdown import install_signal_handlers

logger = structlog.get_logger()


def default_channels(config: ServiceConfig) -> list[NotificationChannel]:
    """Channels enabled by configuration, in delivery order."""
    channels: list[NotificationChannel] = []
    if config.slack.enabled:
        channels.append(SlackChannel(config.slack))
    if config.webhook.enabled:
        channels.append(WebhookChannel(config.webhook))
    return channels


class SyncService:
    """Top-level process: one pipeline, one manager, one HTTP server.

    Call ``asyncio.run(service.run())`` to start.  ``run()`` starts the
    collaborators, launches every account's sync loop and serves the
    FastAPI app until SIGTERM/SIGINT (or :meth:`stop`), then shuts
    everything down in reverse order.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        index_store: IndexStore | None = None,
        classifier: Classifier | None = None,
        channels: Sequence[NotificationChannel] | None = None,
        broadcaster: WebSocketBroadcaster | None = None,
        session_factory: SessionFactory = connect,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()

        self.index_store = index_store or ElasticsearchIndexStore(config.elasticsearch)
        self.classifier = classifier or OpenAIClassifier(config.classifier)
        self.channels = list(channels) if channels is not None else default_channels(config)
        self.broadcaster = broadcaster or WebSocketBroadcaster()

        self.pipeline = ProcessingPipeline(
            self.index_store,
            self.classifier,
            self.channels,
            self.broadcaster,
            actionable_label=config.actionable_label,
            retry=config.retry,
            stage_timeout_seconds=config.stage_timeout_seconds,
        )
        self.manager = SyncManager(
            config.accounts,
            self.pipeline,
            config.sync,
            session_factory=session_factory,
        )
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> dict[str, Any]:
        try:
            index_reachable = await self.index_store.ping()
        except Exception:
            index_reachable = False
        return {
            "index_reachable": index_reachable,
            "channels": [channel.name for channel in self.channels],
            "live_viewers": self.broadcaster.viewer_count,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Request shutdown; ``run()`` returns once everything is stopped."""
        self._shutdown_event.set()

    async def start(self) -> None:
        """Start collaborators and the per-account sync loops.

        A collaborator that fails to start leaves the service running in
        ``degraded`` mode; its stage then fails per message and is logged.
        """
        for problem in self.config.validate_runtime():
            logger.warning("config_warning", problem=problem)

        degraded = False
        try:
            await self.index_store.start()
        except Exception as exc:
            degraded = True
            logger.error("index_store_start_failed", error=str(exc))

        try:
            await self.classifier.start()
        except Exception as exc:
            degraded = True
            logger.error("classifier_start_failed", error=str(exc))

        for channel in self.channels:
            try:
                await channel.start()
            except Exception as exc:
                degraded = True
                logger.error("channel_start_failed", channel=channel.name, error=str(exc))

        await self.manager.start()
        self.status = ServiceStatus.DEGRADED if degraded else ServiceStatus.RUNNING
        logger.info("service_started", service=self.config.name, status=self.status.value)

    async def shutdown(self) -> None:
        """Stop sync loops first, then release collaborator clients."""
        self.status = ServiceStatus.STOPPING
        await self.manager.stop()

        for channel in self.channels:
            await _stop_quietly(channel.stop(), component=channel.name)
        await _stop_quietly(self.classifier.stop(), component="classifier")
        await _stop_quietly(self.index_store.stop(), component="index_store")

        self.status = ServiceStatus.STOPPED
        logger.info("service_stopped", service=self.config.name)

    async def _run_http_server(self) -> None:
        """Serve the FastAPI app until the shutdown event fires."""
        app = create_app(self)
        config = uvicorn.Config(
            app,
            host=self.config.http_host,
            port=self.config.http_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    async def run(self) -> None:
        """Single entry point::

            asyncio.run(SyncService(ServiceConfig()).run())
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level, service=self.config.name)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()

        logger.info("service_starting", service=self.config.name)

        try:
            await self.start()
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_http_server())
        except* Exception:
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            await self.shutdown()


async def _stop_quietly(stopping: Awaitable[None], *, component: str) -> None:
    try:
        await stopping
    except Exception as exc:
        logger.warning("component_stop_failed", component=component, error=str(exc))
