"""Shared test fixtures for the inboxsync test suite."""

from __future__ import annotations

import asyncio
import email.utils
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from email.mime.text import MIMEText

import pytest
from pydantic import SecretStr

from inboxsync.config import AccountConfig, RetryConfig, SyncPolicyConfig
from inboxsync.exceptions import ClassificationError, FolderError, TransportError
from inboxsync.index_store import to_document
from inboxsync.interfaces import Classifier, IndexStore, LiveBroadcaster, NotificationChannel
from inboxsync.models import FetchCriteria, RawRecord
from inboxsync_schema import Classification, ClassificationLabel, Message, NotificationEvent

NOW = datetime(2025, 6, 30, 12, 0, 0, tzinfo=UTC)


# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------


@pytest.fixture
def account() -> AccountConfig:
    return AccountConfig(
        id="A",
        host="imap.test.com",
        port=993,
        username="testuser",
        password=SecretStr("testpass"),
        folders=("INBOX",),
    )


@pytest.fixture
def policy() -> SyncPolicyConfig:
    return SyncPolicyConfig(
        poll_interval_seconds=0.01,
        backfill_days=30,
        reconnect_initial_seconds=0.01,
        reconnect_max_seconds=0.05,
        reconnect_multiplier=2.0,
        imap_timeout_seconds=5.0,
        shutdown_timeout_seconds=1.0,
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.1,
        multiplier=2.0,
    )


# ------------------------------------------------------------------
# Raw records & messages
# ------------------------------------------------------------------


def make_record(
    uid: int,
    *,
    subject: str = "Test Subject",
    omit_subject: bool = False,
    body: str = "Hello, World!",
    sender: str = "Sender <sender@example.com>",
    to: str = "recipient@example.com",
    date: datetime = NOW - timedelta(days=1),
    flags: list[str] | None = None,
) -> RawRecord:
    """Build a RawRecord the way a BODY.PEEK[HEADER]/[TEXT] fetch returns it."""
    msg = MIMEText(body, "plain")
    if not omit_subject:
        msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Message-ID"] = f"<msg-{uid}@example.com>"
    msg["Date"] = email.utils.format_datetime(date)

    head, _, text = msg.as_bytes().partition(b"\n\n")
    return RawRecord(
        uid=uid,
        header=head + b"\n\n",
        text=text,
        flags=list(flags or []),
        internal_date=date,
    )


def make_message(uid: int = 1, *, account_id: str = "A", **overrides) -> Message:
    defaults = dict(
        id=Message.make_id(account_id, uid),
        uid=uid,
        account_id=account_id,
        folder="INBOX",
        sender="sender@example.com",
        to=["recipient@example.com"],
        subject="Quick question",
        body="Can we talk next week about pricing?",
        timestamp=NOW - timedelta(days=1),
    )
    defaults.update(overrides)
    return Message(**defaults)


@pytest.fixture
def message() -> Message:
    return make_message()


# ------------------------------------------------------------------
# Pipeline collaborators
# ------------------------------------------------------------------


class FakeIndexStore(IndexStore):
    """In-memory store with the same partial-update semantics as the real one."""

    def __init__(self, calls: list[str] | None = None, *, fail: Exception | None = None) -> None:
        self.docs: dict[str, dict] = {}
        self.upserts = 0
        self.calls = calls if calls is not None else []
        self.fail = fail

    async def upsert(self, message: Message) -> None:
        self.calls.append(f"index:{message.id}")
        if self.fail is not None:
            raise self.fail
        self.upserts += 1
        self.docs.setdefault(message.id, {}).update(to_document(message))

    async def update_classification(
        self,
        message_id: str,
        label: ClassificationLabel,
        confidence: float,
        rationale: str | None = None,
    ) -> None:
        self.calls.append(f"update:{message_id}")
        if self.fail is not None:
            raise self.fail
        doc = self.docs.setdefault(message_id, {})
        doc["ai_category"] = label.value
        doc["ai_confidence"] = confidence
        if rationale is not None:
            doc["ai_rationale"] = rationale


class FakeClassifier(Classifier):
    def __init__(
        self,
        calls: list[str] | None = None,
        *,
        result: Classification | None = None,
        fail: Exception | None = None,
        fail_ids: Iterable[str] = (),
    ) -> None:
        self.calls = calls if calls is not None else []
        self.result = result
        self.fail = fail
        # Message ids that raise ClassificationError; others get *result*
        self.fail_ids = set(fail_ids)

    async def classify(self, message: Message) -> Classification | None:
        self.calls.append(f"classify:{message.id}")
        if self.fail is not None:
            raise self.fail
        if message.id in self.fail_ids:
            raise ClassificationError(f"unparseable reply for {message.id}")
        return self.result


class RecordingChannel(NotificationChannel):
    """Fails the first *failures* deliveries, then records every event."""

    def __init__(self, name: str, calls: list[str] | None = None, *, failures: int = 0) -> None:
        self.name = name
        self.calls = calls if calls is not None else []
        self.failures = failures
        self.attempts = 0
        self.events: list[NotificationEvent] = []

    async def deliver(self, event: NotificationEvent) -> None:
        self.attempts += 1
        self.calls.append(f"notify:{self.name}:{event.message.id}")
        if self.attempts <= self.failures:
            raise RuntimeError(f"{self.name} unavailable")
        self.events.append(event)


class RecordingBroadcaster(LiveBroadcaster):
    def __init__(self, calls: list[str] | None = None) -> None:
        self.calls = calls if calls is not None else []
        self.published: list[tuple[Message, Classification | None]] = []

    async def publish(self, message: Message, classification: Classification | None) -> None:
        self.calls.append(f"broadcast:{message.id}")
        self.published.append((message, classification))


class RecordingPipeline:
    """Stands in for ProcessingPipeline in scheduler and manager tests."""

    def __init__(self) -> None:
        self.processed: list[Message] = []

    async def process(self, message: Message) -> None:
        self.processed.append(message)

    @property
    def ids(self) -> list[str]:
        return [m.id for m in self.processed]


@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def interested() -> Classification:
    return Classification(label=ClassificationLabel.INTERESTED, confidence=92, rationale="asks for a call")


# ------------------------------------------------------------------
# Mailbox sessions
# ------------------------------------------------------------------


class FakeSession:
    """In-memory mailbox with the MailboxSession surface the scheduler uses."""

    def __init__(self, folders: dict[str, list[RawRecord]] | None = None) -> None:
        self.folders: dict[str, dict[int, RawRecord]] = {
            name: {r.uid: r for r in records} for name, records in (folders or {"INBOX": []}).items()
        }
        self.failing_folders: set[str] = set()
        self.alive = True
        self.closed = False
        self.selected: str | None = None
        self.fetched: list[int] = []
        self.searches: list[FetchCriteria] = []

    def add(self, folder: str, record: RawRecord) -> None:
        self.folders.setdefault(folder, {})[record.uid] = record

    def mark_seen(self, folder: str, uid: int) -> None:
        self.folders[folder][uid].flags.append("\\Seen")

    @property
    def is_authenticated(self) -> bool:
        return not self.closed and self.alive

    async def is_alive(self) -> bool:
        return self.alive

    async def close(self) -> None:
        self.closed = True

    async def select_folder(self, name: str) -> None:
        if not self.alive:
            raise TransportError("connection lost")
        if name in self.failing_folders or name not in self.folders:
            raise FolderError(name, "NO [NONEXISTENT] Unknown Mailbox")
        self.selected = name

    async def search_uids(self, criteria: FetchCriteria) -> list[int]:
        self.searches.append(criteria)
        records = self.folders[self.selected or "INBOX"].values()
        if criteria.unseen_only:
            return sorted(r.uid for r in records if "\\Seen" not in r.flags)
        return sorted(
            r.uid
            for r in records
            if r.internal_date is not None
            and criteria.since <= r.internal_date.date()
            and (criteria.before is None or r.internal_date.date() < criteria.before)
        )

    async def fetch(self, uids) -> list[RawRecord]:
        folder = self.folders[self.selected or "INBOX"]
        result = []
        for uid in uids:
            self.fetched.append(uid)
            result.append(folder[uid])
        return result


class SessionFactory:
    """Async session factory that fails *failures* times before succeeding."""

    def __init__(self, session: FakeSession | None = None, *, failures: int = 0) -> None:
        self.session = session or FakeSession()
        self.failures = failures
        self.calls = 0

    async def __call__(self, account: AccountConfig, policy: SyncPolicyConfig) -> FakeSession:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransportError("connection refused")
        # A fresh login on the same mailbox
        self.session.closed = False
        return self.session


def fixed_clock(now: datetime = NOW) -> Callable[[], datetime]:
    return lambda: now


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds; fail the test on timeout."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)
