"""inboxsync: multi-account mailbox sync with an index/classify/notify pipeline.

Public API re-exported here for convenience::

    from inboxsync import ServiceConfig, SyncService
"""

from .broadcast import WebSocketBroadcaster
from .classifier import OpenAIClassifier, parse_classification
from .config import (
    AccountConfig,
    ClassifierConfig,
    ElasticsearchConfig,
    RetryConfig,
    ServiceConfig,
    SlackConfig,
    SyncPolicyConfig,
    WebhookConfig,
)
from .exceptions import (
    ClassificationError,
    FolderError,
    InboxSyncError,
    NotificationError,
    ProtocolError,
    StageError,
    TransportError,
)
from .index_store import ElasticsearchIndexStore
from .interfaces import Classifier, IndexStore, LiveBroadcaster, NotificationChannel
from .logging import setup_logging
from .manager import SyncManager
from .models import (
    AccountStatus,
    BackfillWindow,
    FetchCriteria,
    HealthStatus,
    RawRecord,
    SchedulerState,
    ServiceStatus,
)
from .normalizer import normalize
from .notifiers import SlackChannel, WebhookChannel
from .pipeline import ProcessingPipeline
from .retry import with_retry
from .scheduler import AccountScheduler
from .service import SyncService
from .session import MailboxSession, connect

__all__ = [
    "AccountConfig",
    "AccountScheduler",
    "AccountStatus",
    "BackfillWindow",
    "ClassificationError",
    "Classifier",
    "ClassifierConfig",
    "ElasticsearchConfig",
    "ElasticsearchIndexStore",
    "FetchCriteria",
    "FolderError",
    "HealthStatus",
    "InboxSyncError",
    "IndexStore",
    "LiveBroadcaster",
    "MailboxSession",
    "NotificationChannel",
    "NotificationError",
    "OpenAIClassifier",
    "ProcessingPipeline",
    "ProtocolError",
    "RawRecord",
    "RetryConfig",
    "SchedulerState",
    "ServiceConfig",
    "ServiceStatus",
    "SlackChannel",
    "SlackConfig",
    "StageError",
    "SyncManager",
    "SyncPolicyConfig",
    "SyncService",
    "TransportError",
    "WebSocketBroadcaster",
    "WebhookChannel",
    "WebhookConfig",
    "connect",
    "normalize",
    "parse_classification",
    "setup_logging",
    "with_retry",
]
