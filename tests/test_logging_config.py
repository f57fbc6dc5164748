"""Tests for logging setup and request tracking."""

import json
import logging

import pytest

from convo_recall.logging_config import (
    StructuredFormatter,
    request_id_var,
    setup_logging,
    with_request_id,
)


@pytest.fixture
def package_logger():
    logger = logging.getLogger("convo_recall")
    level = logger.level
    yield logger
    logger.setLevel(level)


def _record(message="indexed messages", **extra):
    record = logging.LogRecord("convo_recall.search", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSetupLogging:

    def test_structured_handler(self, package_logger):
        handler = setup_logging("DEBUG", structured=True)
        try:
            assert handler in package_logger.handlers
            assert isinstance(handler.formatter, StructuredFormatter)
            assert package_logger.level == logging.DEBUG
        finally:
            package_logger.removeHandler(handler)

    def test_plain_handler(self, package_logger):
        handler = setup_logging("warning", structured=False)
        try:
            assert not isinstance(handler.formatter, StructuredFormatter)
            assert package_logger.level == logging.WARNING
            assert "indexed messages" in handler.format(_record())
        finally:
            package_logger.removeHandler(handler)


class TestStructuredFormatter:

    def test_json_line(self):
        data = json.loads(StructuredFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "convo_recall.search"
        assert data["message"] == "indexed messages"
        assert data["request_id"] == ""

    def test_extra_fields(self):
        data = json.loads(StructuredFormatter().format(
            _record(duration_ms=1.5, operation="search_conversations", result_count=3)
        ))
        assert data["duration_ms"] == 1.5
        assert data["operation"] == "search_conversations"
        assert data["result_count"] == 3


class TestRequestId:

    @pytest.mark.asyncio
    async def test_set_during_call_and_reset_after(self, caplog):
        @with_request_id
        async def lookup():
            return [request_id_var.get()]

        with caplog.at_level(logging.INFO):
            result = await lookup()

        assert len(result[0]) == 8
        assert request_id_var.get() == ""
        completed = [r for r in caplog.records if r.getMessage() == "Operation completed"]
        assert completed[0].operation == "lookup"
        assert completed[0].result_count == 1
