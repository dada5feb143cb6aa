"""Outbound notification channels: Slack and a generic JSON webhook."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from inboxsync_schema import NotificationEvent

from .config import SlackConfig, WebhookConfig
from .exceptions import NotificationError
from .interfaces import NotificationChannel

logger = structlog.get_logger()

USER_AGENT = "inboxsync/1.0"
PREVIEW_CHARS = 200


class HttpChannel(NotificationChannel):
    """Shared httpx client lifecycle for channels that POST JSON."""

    def __init__(self, timeout_seconds: float) -> None:
        self._timeout_seconds = timeout_seconds
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise AssertionError("Channel not started")
        return self._client

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout_seconds),
            headers={"User-Agent": USER_AGENT},
        )
        logger.info("notification_channel_started", channel=self.name)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("notification_channel_stopped", channel=self.name)


def build_slack_message(event: NotificationEvent) -> dict[str, Any]:
    """Render *event* as a Slack message with one attachment of fields."""
    message = event.message
    body = message.body or "No body content"
    preview = body[:PREVIEW_CHARS]
    if len(message.body) > PREVIEW_CHARS:
        preview += "..."
    classification = event.classification
    confidence = classification.confidence if classification else 0
    label = classification.label.value if classification else "Categorized"

    return {
        "text": f":dart: *New {label} Email Received!*",
        "attachments": [
            {
                "color": "good",
                "fields": [
                    {"title": "From", "value": message.sender or "Unknown Sender", "short": True},
                    {"title": "Subject", "value": message.subject or "No Subject", "short": True},
                    {
                        "title": "Date",
                        "value": message.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC"),
                        "short": True,
                    },
                    {"title": "Account", "value": message.account_id, "short": True},
                    {"title": "Folder", "value": message.folder, "short": True},
                    {"title": "AI Confidence", "value": f"{confidence:g}%", "short": True},
                    {"title": "Preview", "value": preview, "short": False},
                ],
                "footer": "inboxsync",
                "ts": int(message.timestamp.timestamp()),
            }
        ],
    }


class SlackChannel(HttpChannel):
    """Post to Slack via ``chat.postMessage`` (bot token) or an incoming webhook.

    The bot token is used when both a token and a channel id are
    configured; otherwise the incoming webhook URL is used.
    """

    name = "slack"

    def __init__(self, config: SlackConfig) -> None:
        super().__init__(config.timeout_seconds)
        self._config = config

    async def deliver(self, event: NotificationEvent) -> None:
        payload = build_slack_message(event)

        if self._config.bot_token is not None and self._config.channel_id:
            response = await self.client.post(
                f"{self._config.api_url.rstrip('/')}/chat.postMessage",
                json={
                    "channel": self._config.channel_id,
                    "unfurl_links": False,
                    "unfurl_media": False,
                    **payload,
                },
                headers={
                    "Authorization": f"Bearer {self._config.bot_token.get_secret_value()}"
                },
            )
            response.raise_for_status()
            # The Web API reports failures in the body with HTTP 200
            body = response.json()
            if not body.get("ok", False):
                raise NotificationError(f"slack API error: {body.get('error', 'unknown')}")
        elif self._config.webhook_url:
            response = await self.client.post(self._config.webhook_url, json=payload)
            response.raise_for_status()
        else:
            raise NotificationError("slack channel is not configured")

        logger.debug("slack_message_posted", message_id=event.message.id)


def build_webhook_payload(event: NotificationEvent) -> dict[str, Any]:
    return {
        "event": event.event.value,
        "data": {
            "email": event.message.model_dump(mode="json"),
            "category": (
                event.classification.model_dump(mode="json") if event.classification else None
            ),
        },
        "timestamp": event.timestamp.isoformat(),
    }


class WebhookChannel(HttpChannel):
    """POST a JSON envelope describing the event to a configured URL."""

    name = "webhook"

    def __init__(self, config: WebhookConfig) -> None:
        super().__init__(config.timeout_seconds)
        self._config = config

    async def deliver(self, event: NotificationEvent) -> None:
        if not self._config.url:
            raise NotificationError("webhook URL is not configured")
        response = await self.client.post(self._config.url, json=build_webhook_payload(event))
        response.raise_for_status()
        logger.debug(
            "webhook_delivered",
            message_id=event.message.id,
            status_code=response.status_code,
        )
