"""Tests for inboxsync.pipeline (ProcessingPipeline)."""

from __future__ import annotations

import asyncio

import pytest
from conftest import (
    FakeClassifier,
    FakeIndexStore,
    RecordingBroadcaster,
    RecordingChannel,
    make_message,
)

from inboxsync.config import RetryConfig
from inboxsync.exceptions import ClassificationError
from inboxsync.interfaces import Classifier
from inboxsync.pipeline import ProcessingPipeline
from inboxsync_schema import Classification, ClassificationLabel, EventType, Message


def _pipeline(
    calls: list[str],
    retry_config: RetryConfig,
    *,
    store: FakeIndexStore | None = None,
    classifier: Classifier | None = None,
    channels: list[RecordingChannel] | None = None,
    broadcaster: RecordingBroadcaster | None = None,
    timeout: float = 1.0,
) -> ProcessingPipeline:
    return ProcessingPipeline(
        store or FakeIndexStore(calls),
        classifier or FakeClassifier(calls),
        channels if channels is not None else [RecordingChannel("slack", calls)],
        broadcaster or RecordingBroadcaster(calls),
        retry=retry_config,
        stage_timeout_seconds=timeout,
    )


class TestStageOrder:
    @pytest.mark.asyncio
    async def test_actionable_message_runs_every_stage_in_order(
        self, calls: list[str], retry_config: RetryConfig, interested: Classification
    ):
        pipeline = _pipeline(calls, retry_config, classifier=FakeClassifier(calls, result=interested))
        await pipeline.process(make_message(1))

        assert calls == [
            "index:A_1",
            "classify:A_1",
            "update:A_1",
            "notify:slack:A_1",
            "broadcast:A_1",
        ]

    @pytest.mark.asyncio
    async def test_non_actionable_label_skips_notify(
        self, calls: list[str], retry_config: RetryConfig
    ):
        spam = Classification(label=ClassificationLabel.SPAM, confidence=99)
        pipeline = _pipeline(calls, retry_config, classifier=FakeClassifier(calls, result=spam))
        await pipeline.process(make_message(1))

        assert not any(c.startswith("notify") for c in calls)
        assert calls[-1] == "broadcast:A_1"

    @pytest.mark.asyncio
    async def test_unavailable_classifier_leaves_message_unclassified(
        self, calls: list[str], retry_config: RetryConfig
    ):
        store = FakeIndexStore(calls)
        broadcaster = RecordingBroadcaster(calls)
        pipeline = _pipeline(calls, retry_config, store=store, broadcaster=broadcaster)
        await pipeline.process(make_message(1))

        assert "ai_category" not in store.docs["A_1"]
        message, classification = broadcaster.published[0]
        assert classification is None
        assert message.classification is None

    @pytest.mark.asyncio
    async def test_broadcast_carries_classification(
        self, calls: list[str], retry_config: RetryConfig, interested: Classification
    ):
        broadcaster = RecordingBroadcaster(calls)
        pipeline = _pipeline(
            calls,
            retry_config,
            classifier=FakeClassifier(calls, result=interested),
            broadcaster=broadcaster,
        )
        await pipeline.process(make_message(1))

        message, classification = broadcaster.published[0]
        assert classification == interested
        assert message.classification == interested


class TestFaultIsolation:
    @pytest.mark.asyncio
    async def test_index_failure_still_classifies_and_broadcasts(
        self, calls: list[str], retry_config: RetryConfig, interested: Classification
    ):
        store = FakeIndexStore(calls, fail=ConnectionError("es down"))
        channel = RecordingChannel("slack", calls)
        pipeline = _pipeline(
            calls,
            retry_config,
            store=store,
            classifier=FakeClassifier(calls, result=interested),
            channels=[channel],
        )
        await pipeline.process(make_message(1))

        assert "classify:A_1" in calls
        assert len(channel.events) == 1
        assert calls[-1] == "broadcast:A_1"

    @pytest.mark.asyncio
    async def test_malformed_classification_is_not_fatal(
        self, calls: list[str], retry_config: RetryConfig
    ):
        broadcaster = RecordingBroadcaster(calls)
        pipeline = _pipeline(
            calls,
            retry_config,
            classifier=FakeClassifier(calls, fail=ClassificationError("gibberish")),
            broadcaster=broadcaster,
        )
        await pipeline.process(make_message(1))

        assert not any(c.startswith(("update", "notify")) for c in calls)
        assert broadcaster.published[0][1] is None

    @pytest.mark.asyncio
    async def test_slow_classifier_times_out(self, calls: list[str], retry_config: RetryConfig):
        class SlowClassifier(Classifier):
            async def classify(self, message: Message) -> Classification | None:
                await asyncio.sleep(10)
                return None

        broadcaster = RecordingBroadcaster(calls)
        pipeline = _pipeline(
            calls,
            retry_config,
            classifier=SlowClassifier(),
            broadcaster=broadcaster,
            timeout=0.05,
        )
        await asyncio.wait_for(pipeline.process(make_message(1)), timeout=2)
        assert calls[-1] == "broadcast:A_1"

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_swallowed(
        self, calls: list[str], retry_config: RetryConfig
    ):
        class BrokenBroadcaster(RecordingBroadcaster):
            async def publish(self, message, classification):
                raise RuntimeError("no viewers")

        pipeline = _pipeline(calls, retry_config, broadcaster=BrokenBroadcaster(calls))
        await pipeline.process(make_message(1))  # should not raise


class TestNotificationDispatch:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(
        self, calls: list[str], retry_config: RetryConfig, interested: Classification
    ):
        channel = RecordingChannel("webhook", calls, failures=2)
        pipeline = _pipeline(
            calls,
            retry_config,
            classifier=FakeClassifier(calls, result=interested),
            channels=[channel],
        )
        await pipeline.process(make_message(1))

        assert channel.attempts == 3
        assert len(channel.events) == 1
        event = channel.events[0]
        assert event.event == EventType.EMAIL_CATEGORIZED
        assert event.classification == interested
        assert event.message.classification == interested

    @pytest.mark.asyncio
    async def test_exhausted_channel_does_not_block_others(
        self, calls: list[str], retry_config: RetryConfig, interested: Classification
    ):
        broken = RecordingChannel("slack", calls, failures=100)
        healthy = RecordingChannel("webhook", calls)
        pipeline = _pipeline(
            calls,
            retry_config,
            classifier=FakeClassifier(calls, result=interested),
            channels=[broken, healthy],
        )
        await pipeline.process(make_message(1))

        assert broken.attempts == retry_config.max_attempts
        assert broken.events == []
        assert len(healthy.events) == 1
        assert calls[-1] == "broadcast:A_1"

    @pytest.mark.asyncio
    async def test_no_channels_configured(
        self, calls: list[str], retry_config: RetryConfig, interested: Classification
    ):
        pipeline = _pipeline(
            calls,
            retry_config,
            classifier=FakeClassifier(calls, result=interested),
            channels=[],
        )
        await pipeline.process(make_message(1))
        assert calls[-1] == "broadcast:A_1"

    @pytest.mark.asyncio
    async def test_custom_actionable_label(self, calls: list[str], retry_config: RetryConfig):
        booked = Classification(label=ClassificationLabel.MEETING_BOOKED, confidence=80)
        channel = RecordingChannel("slack", calls)
        pipeline = ProcessingPipeline(
            FakeIndexStore(calls),
            FakeClassifier(calls, result=booked),
            [channel],
            RecordingBroadcaster(calls),
            actionable_label=ClassificationLabel.MEETING_BOOKED,
            retry=retry_config,
        )
        await pipeline.process(make_message(1))
        assert len(channel.events) == 1


class TestIdempotentReprocessing:
    @pytest.mark.asyncio
    async def test_reprocessing_same_message_keeps_one_document(
        self, calls: list[str], retry_config: RetryConfig, interested: Classification
    ):
        store = FakeIndexStore(calls)
        pipeline = _pipeline(
            calls,
            retry_config,
            store=store,
            classifier=FakeClassifier(calls, result=interested),
        )
        await pipeline.process(make_message(1))
        first = dict(store.docs["A_1"])
        await pipeline.process(make_message(1))

        assert list(store.docs) == ["A_1"]
        assert store.docs["A_1"] == first
