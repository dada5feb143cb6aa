"""Elasticsearch-backed index store for normalized messages."""

from __future__ import annotations

from typing import Any

import structlog
from elasticsearch import AsyncElasticsearch

from inboxsync_schema import ClassificationLabel, Message

from .config import ElasticsearchConfig
from .interfaces import IndexStore

logger = structlog.get_logger()

INDEX_SETTINGS: dict[str, Any] = {
    "number_of_shards": 1,
    "number_of_replicas": 0,
    "analysis": {
        "analyzer": {
            "email_analyzer": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "stop", "snowball"],
            }
        }
    },
}

_ANALYZED_KEYWORD = {
    "type": "text",
    "analyzer": "email_analyzer",
    "fields": {"keyword": {"type": "keyword"}},
}

INDEX_MAPPINGS: dict[str, Any] = {
    "properties": {
        "id": {"type": "keyword"},
        "uid": {"type": "long"},
        "account_id": {"type": "keyword"},
        "folder": {"type": "keyword"},
        "from": _ANALYZED_KEYWORD,
        "to": _ANALYZED_KEYWORD,
        "cc": _ANALYZED_KEYWORD,
        "bcc": _ANALYZED_KEYWORD,
        "subject": _ANALYZED_KEYWORD,
        "body": {"type": "text", "analyzer": "email_analyzer"},
        "html_body": {"type": "text", "analyzer": "email_analyzer"},
        "date": {"type": "date"},
        "flags": {"type": "keyword"},
        "attachments": {
            "properties": {
                "filename": {"type": "keyword"},
                "content_type": {"type": "keyword"},
                "size": {"type": "long"},
            }
        },
        "ai_category": {"type": "keyword"},
        "ai_confidence": {"type": "float"},
        "ai_rationale": {"type": "text"},
    }
}


def to_document(message: Message) -> dict[str, Any]:
    """Build the index document for *message*.

    The document is a pure function of the message (no wall-clock
    fields), and classification fields are only present when the
    message carries a classification, so a partial upsert never clears
    a stored result.
    """
    doc: dict[str, Any] = {
        "id": message.id,
        "uid": message.uid,
        "account_id": message.account_id,
        "folder": message.folder,
        "from": message.sender,
        "to": list(message.to),
        "cc": list(message.cc),
        "bcc": list(message.bcc),
        "subject": message.subject,
        "body": message.body,
        "html_body": message.html_body,
        "date": message.timestamp.isoformat(),
        "flags": list(message.flags),
        "attachments": [a.model_dump() for a in message.attachments],
    }
    if message.classification is not None:
        doc["ai_category"] = message.classification.label.value
        doc["ai_confidence"] = message.classification.confidence
        doc["ai_rationale"] = message.classification.rationale
    return doc


class ElasticsearchIndexStore(IndexStore):
    """Upserts messages into one Elasticsearch index keyed by message id."""

    def __init__(self, config: ElasticsearchConfig, client: AsyncElasticsearch | None = None) -> None:
        self._config = config
        self._client = client

    @property
    def client(self) -> AsyncElasticsearch:
        assert self._client is not None, "Index store not started"
        return self._client

    async def start(self) -> None:
        """Create the client and the index (with mapping) if it does not exist."""
        if self._client is None:
            basic_auth = None
            if self._config.username and self._config.password is not None:
                basic_auth = (self._config.username, self._config.password.get_secret_value())
            self._client = AsyncElasticsearch(
                hosts=[self._config.url],
                basic_auth=basic_auth,
                request_timeout=self._config.request_timeout_seconds,
            )

        if not await self.client.indices.exists(index=self._config.index):
            await self.client.indices.create(
                index=self._config.index,
                settings=INDEX_SETTINGS,
                mappings=INDEX_MAPPINGS,
            )
            logger.info("index_created", index=self._config.index)
        logger.info("index_store_started", url=self._config.url, index=self._config.index)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("index_store_stopped")

    async def ping(self) -> bool:
        if self._client is None:
            return False
        return bool(await self._client.ping())

    async def upsert(self, message: Message) -> None:
        await self.client.update(
            index=self._config.index,
            id=message.id,
            doc=to_document(message),
            doc_as_upsert=True,
        )
        logger.debug("document_upserted", message_id=message.id)

    async def update_classification(
        self,
        message_id: str,
        label: ClassificationLabel,
        confidence: float,
        rationale: str | None = None,
    ) -> None:
        doc: dict[str, Any] = {"ai_category": label.value, "ai_confidence": confidence}
        if rationale is not None:
            doc["ai_rationale"] = rationale
        await self.client.update(index=self._config.index, id=message_id, doc=doc)
        logger.debug("document_classified", message_id=message_id, label=label.value)
