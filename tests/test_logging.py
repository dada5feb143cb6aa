"""Tests for inboxsync.logging."""

from __future__ import annotations

import json
import logging

import structlog

from inboxsync.logging import setup_logging


class TestSetupLogging:
    def test_json_mode(self):
        setup_logging(json=True, level="INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_console_mode(self):
        setup_logging(json=False, level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_level_case_insensitive(self):
        setup_logging(level="warning")
        assert logging.getLogger().level == logging.WARNING

    def test_replaces_existing_handlers(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())
        setup_logging()
        assert len(root.handlers) == 1

    def test_quietens_client_libraries(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("elastic_transport").level == logging.WARNING

    def test_json_lines_carry_service_and_bound_context(self, capsys):
        setup_logging(json=True, level="INFO", service="inboxsync-test")
        logger = structlog.get_logger("test_logger")
        with structlog.contextvars.bound_contextvars(account_id="A"):
            logger.info("test_event", key="value")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "test_event"
        assert record["service"] == "inboxsync-test"
        assert record["account_id"] == "A"
        assert record["key"] == "value"
        assert record["level"] == "info"
