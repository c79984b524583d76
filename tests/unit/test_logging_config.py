"""Tests for correlation ids on stdlib and structlog output."""
import logging

import pytest

from claw_pilot.logging_config import (
    NO_CORRELATION_ID,
    CorrelationFilter,
    configure_logging,
    correlation_scope,
    current_correlation_id,
    stamp_correlation_id,
)


@pytest.fixture
def root_logger():
    """Restore the root logger after configure_logging replaced its handlers."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record() -> logging.LogRecord:
    return logging.LogRecord("claw_pilot.test", logging.INFO, __file__, 1, "hello", None, None)


class TestCorrelationScope:
    def test_default_outside_scope(self):
        assert current_correlation_id() == NO_CORRELATION_ID

    def test_generated_id(self):
        with correlation_scope() as cid:
            assert len(cid) == 12
            assert current_correlation_id() == cid
        assert current_correlation_id() == NO_CORRELATION_ID

    def test_nested_scope_restores_outer(self):
        with correlation_scope("outer"):
            with correlation_scope("inner"):
                assert current_correlation_id() == "inner"
            assert current_correlation_id() == "outer"


class TestStamping:
    def test_filter_stamps_records(self):
        record = _record()
        with correlation_scope("abc123"):
            assert CorrelationFilter().filter(record) is True
        assert record.correlation_id == "abc123"

    def test_root_handler_formats_id(self, root_logger):
        configure_logging(logging.DEBUG)
        handler = root_logger.handlers[0]
        record = _record()
        with correlation_scope("req42"):
            handler.filter(record)
        assert "[req42] hello" in handler.format(record)

    def test_structlog_processor(self):
        with correlation_scope("evt7"):
            event = stamp_correlation_id(None, "info", {"event": "request"})
        assert event == {"event": "request", "correlation_id": "evt7"}

    def test_processor_keeps_explicit_id(self):
        event = stamp_correlation_id(None, "info", {"event": "x", "correlation_id": "given"})
        assert event["correlation_id"] == "given"
