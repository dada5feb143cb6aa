"""Service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Each section reads its own prefix and is nested into :class:`ServiceConfig`.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings

from inboxsync_schema import ClassificationLabel


class AccountConfig(BaseModel):
    """One remote mailbox to synchronize.

    Accounts are supplied as a JSON list in ``INBOXSYNC_ACCOUNTS``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique account identifier")
    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    use_tls: bool = Field(default=True, description="Connect over implicit TLS")
    folders: tuple[str, ...] = Field(
        default=("INBOX",),
        description="Folders to watch, in sync order",
    )

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and bool(self.password.get_secret_value())


class SyncPolicyConfig(BaseSettings):
    """Scheduling policy for the per-account sync loops."""

    model_config = {"env_prefix": "SYNC_"}

    poll_interval_seconds: float = Field(default=30.0, description="Seconds between poll ticks")
    backfill_days: int = Field(default=30, description="Look-back window for the initial backfill")
    reconnect_initial_seconds: float = Field(
        default=1.0,
        description="Delay before the first reconnect attempt",
    )
    reconnect_max_seconds: float = Field(
        default=300.0,
        description="Upper bound on the reconnect delay",
    )
    reconnect_multiplier: float = Field(default=2.0, description="Reconnect backoff multiplier")
    imap_timeout_seconds: float = Field(
        default=60.0,
        description="Socket timeout for IMAP connections",
    )
    shutdown_timeout_seconds: float = Field(
        default=10.0,
        description="How long stop() waits for a loop before cancelling it",
    )

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number *attempt* (1-based)."""
        exponent = max(attempt, 1) - 1
        delay = self.reconnect_initial_seconds * self.reconnect_multiplier**exponent
        return min(delay, self.reconnect_max_seconds)


class RetryConfig(BaseSettings):
    """Retry / backoff settings for notification delivery, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum delivery attempts per channel")
    initial_wait_seconds: float = Field(default=2.0, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=30.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class ElasticsearchConfig(BaseSettings):
    """Index store connection settings."""

    model_config = {"env_prefix": "ELASTICSEARCH_"}

    url: str = Field(default="http://localhost:9200", description="Elasticsearch URL")
    index: str = Field(default="emails", description="Index holding email documents")
    username: str | None = Field(default=None, description="Basic-auth username")
    password: SecretStr | None = Field(default=None, description="Basic-auth password")
    request_timeout_seconds: float = Field(default=10.0, description="Per-request timeout")


class ClassifierConfig(BaseSettings):
    """OpenAI-compatible chat model used for classification."""

    model_config = {"env_prefix": "CLASSIFIER_"}

    api_key: SecretStr | None = Field(
        default=None,
        description="API key; classification is disabled when unset",
    )
    base_url: str | None = Field(default=None, description="Custom API base URL")
    model: str = Field(default="gpt-3.5-turbo", description="Chat model name")
    max_tokens: int = Field(default=1000, description="Completion token limit")
    temperature: float = Field(default=0.7, description="Sampling temperature")
    body_chars: int = Field(
        default=1000,
        description="How much of the body is included in the prompt",
    )


class SlackConfig(BaseSettings):
    """Slack notification channel (bot token and/or incoming webhook)."""

    model_config = {"env_prefix": "SLACK_"}

    bot_token: SecretStr | None = Field(default=None, description="Bot token for chat.postMessage")
    channel_id: str = Field(default="", description="Channel to post to with the bot token")
    webhook_url: str = Field(default="", description="Incoming webhook URL")
    api_url: str = Field(default="https://slack.com/api", description="Slack Web API base URL")
    timeout_seconds: float = Field(default=5.0, description="HTTP request timeout")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url) or bool(self.bot_token and self.channel_id)


class WebhookConfig(BaseSettings):
    """Generic outbound webhook channel."""

    model_config = {"env_prefix": "WEBHOOK_"}

    url: str = Field(default="", description="Webhook endpoint; disabled when empty")
    timeout_seconds: float = Field(default=5.0, description="HTTP request timeout")

    @property
    def enabled(self) -> bool:
        return bool(self.url)


class ServiceConfig(BaseSettings):
    """Root configuration for the sync service.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "INBOXSYNC_"}

    name: str = Field(default="inboxsync", description="Service name used in logs and health")
    http_host: str = Field(default="0.0.0.0", description="Bind address for the HTTP server")
    http_port: int = Field(default=3000, description="Port for health, status and live feed")
    actionable_label: ClassificationLabel = Field(
        default=ClassificationLabel.INTERESTED,
        description="Classification label that triggers notifications",
    )
    stage_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for each call to an external collaborator",
    )
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_level: str = Field(default="INFO", description="Root log level")
    accounts: list[AccountConfig] = Field(
        default_factory=list,
        description="Mailboxes to synchronize (JSON list)",
    )

    sync: SyncPolicyConfig = Field(default_factory=SyncPolicyConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    elasticsearch: ElasticsearchConfig = Field(default_factory=ElasticsearchConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    def validate_runtime(self) -> list[str]:
        """Return non-fatal configuration problems worth a startup warning."""
        problems: list[str] = []
        if not any(account.has_credentials for account in self.accounts):
            problems.append("no account has both username and password configured")
        if self.classifier.api_key is None:
            problems.append("CLASSIFIER_API_KEY is not set; messages will stay unclassified")
        if not self.slack.enabled and not self.webhook.enabled:
            problems.append("no notification channel is configured")
        return problems
