"""Live push of processed messages to connected WebSocket viewers."""

from __future__ import annotations

import asyncio

import structlog
from fastapi import WebSocket

from inboxsync_schema import Classification, Message

from .interfaces import LiveBroadcaster

logger = structlog.get_logger()

NEW_EMAIL_EVENT = "new_email"


class WebSocketBroadcaster(LiveBroadcaster):
    """Fan out ``new_email`` events to every connected viewer.

    Delivery is fire-and-forget: a viewer whose send fails is dropped and
    never blocks delivery to the others.
    """

    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()

    @property
    def viewer_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        self._connections.add(websocket)
        try:
            await websocket.accept()
        except Exception:
            self._connections.discard(websocket)
            raise
        logger.info("viewer_connected", viewers=self.viewer_count)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._connections:
            self._connections.discard(websocket)
            logger.info("viewer_disconnected", viewers=self.viewer_count)

    async def publish(self, message: Message, classification: Classification | None) -> None:
        if not self._connections:
            return

        payload = {
            "event": NEW_EMAIL_EVENT,
            "email": message.model_dump(mode="json"),
            "classification": (
                classification.model_dump(mode="json") if classification else None
            ),
        }
        viewers = list(self._connections)
        results = await asyncio.gather(
            *(ws.send_json(payload) for ws in viewers),
            return_exceptions=True,
        )
        for ws, result in zip(viewers, results):
            if isinstance(result, Exception):
                logger.debug("viewer_send_failed", error=str(result))
                self.disconnect(ws)
