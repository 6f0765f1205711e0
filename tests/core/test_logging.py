"""Tests for ssid_federation.core.logging module."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from ssid_federation.core.logging import (
    REDACTED,
    JSONFormatter,
    StandardFormatter,
    configure_logging,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    sanitize_payload,
    set_correlation_id,
)


def make_record(msg="Test message", level=logging.INFO, **attrs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def no_correlation():
    set_correlation_id(None)
    yield
    set_correlation_id(None)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


# ============================================================================
# Correlation ID Tests
# ============================================================================


class TestCorrelationId:
    """Tests for correlation ID functionality."""

    def test_default_none(self, no_correlation):
        assert get_correlation_id() is None

    def test_set_and_get(self, no_correlation):
        set_correlation_id("test-correlation-123")
        assert get_correlation_id() == "test-correlation-123"

    def test_generate_unique(self):
        first = generate_correlation_id()
        assert first != generate_correlation_id()
        assert len(first) == 36  # UUID format

    def test_context_uses_provided_id(self, no_correlation):
        digest = "ab" * 32
        with correlation_context(digest) as cid:
            assert cid == digest
            assert get_correlation_id() == digest
        assert get_correlation_id() is None

    def test_context_generates_id(self, no_correlation):
        with correlation_context() as cid:
            assert len(cid) == 36
        assert get_correlation_id() is None

    def test_context_restores_previous_id(self, no_correlation):
        set_correlation_id("outer")
        with correlation_context("inner"):
            assert get_correlation_id() == "inner"
        assert get_correlation_id() == "outer"


# ============================================================================
# Payload Redaction
# ============================================================================


class TestSanitizePayload:
    def test_redacts_secret_keys(self):
        data = {"subject_id": "alice", "share": {"index": 1, "value": 42}, "secret": 7}
        assert sanitize_payload(data) == {"subject_id": "alice", "share": REDACTED, "secret": REDACTED}

    def test_case_insensitive(self):
        assert sanitize_payload({"Private_Key": "ab"}) == {"Private_Key": REDACTED}

    def test_nested_lists(self):
        data = {"contributions": [{"node_id": "node-1", "value": 9}]}
        assert sanitize_payload(data) == {"contributions": [{"node_id": "node-1", "value": REDACTED}]}

    def test_truncates_long_strings(self):
        result = sanitize_payload("x" * 300)
        assert len(result) == 203
        assert result.endswith("...")

    def test_passes_scalars_through(self):
        assert sanitize_payload(5) == 5
        assert sanitize_payload(None) is None


# ============================================================================
# JSONFormatter Tests
# ============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_basic_message(self, no_correlation):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["message"] == "Test message"
        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert "timestamp" in data
        assert "correlation_id" not in data
        assert "source" not in data

    def test_includes_correlation_id(self, no_correlation):
        with correlation_context("tx-digest"):
            data = json.loads(JSONFormatter().format(make_record()))
        assert data["correlation_id"] == "tx-digest"

    def test_source_for_warnings(self, no_correlation):
        data = json.loads(JSONFormatter().format(make_record(level=logging.WARNING)))
        assert data["source"]["line"] == 10

    def test_extra_data_sanitized(self, no_correlation):
        record = make_record(extra_data={"node_id": "node-1", "share": {"index": 1, "value": 3}})
        data = json.loads(JSONFormatter().format(record))
        assert data["extra"] == {"node_id": "node-1", "share": REDACTED}

    def test_exception_info(self, no_correlation):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())
        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


# ============================================================================
# StandardFormatter Tests
# ============================================================================


class TestStandardFormatter:
    def test_plain_output(self, no_correlation):
        output = StandardFormatter(use_colors=False).format(make_record())
        assert "test.logger - INFO - Test message" in output

    def test_short_correlation_prefix(self, no_correlation):
        with correlation_context("0123456789abcdef"):
            output = StandardFormatter(use_colors=False).format(make_record())
        assert "[01234567] Test message" in output

    def test_does_not_mutate_record(self, no_correlation):
        record = make_record()
        with correlation_context("0123456789abcdef"):
            StandardFormatter(use_colors=False).format(record)
        assert record.msg == "Test message"


# ============================================================================
# configure_logging Tests
# ============================================================================


class TestConfigureLogging:
    def test_json_from_env(self, clean_env, monkeypatch, restore_root_logger):
        monkeypatch.setenv("SSID_LOG_FORMAT", "json")
        monkeypatch.setenv("SSID_LOG_LEVEL", "WARNING")
        configure_logging()

        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)

    def test_text_format(self, clean_env, restore_root_logger):
        configure_logging(level="DEBUG", json_format=False)
        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, StandardFormatter)

    def test_file_handler_is_json(self, clean_env, tmp_path, restore_root_logger):
        log_file = tmp_path / "node.log"
        configure_logging(json_format=False, log_file=str(log_file))

        file_handlers = [h for h in restore_root_logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert isinstance(file_handlers[0].formatter, JSONFormatter)
        file_handlers[0].close()

    def test_get_logger(self):
        assert get_logger("ssid_federation.test").name == "ssid_federation.test"
