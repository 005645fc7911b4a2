"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from vibestudy.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
)


def make_record(msg: str = "Test message") -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        output = JSONFormatter().format(make_record())
        data = json.loads(output)

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        record = make_record("Progress write applied")
        record.request_id = "req-123"
        record.user_id = "user-1"
        record.day = 4
        record.field = "code"
        record.duration_ms = 12.5

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "req-123"
        assert data["user_id"] == "user-1"
        assert data["day"] == 4
        assert data["field"] == "code"
        assert data["duration_ms"] == 12.5

    def test_unset_context_omitted(self):
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "user_id" not in data
        assert "bucket_id" not in data
        assert "extra" not in data

    def test_extra_fields_grouped(self):
        record = make_record()
        record.sequence = 42

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"] == {"sequence": 42}

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                name="test", level=logging.ERROR, pathname="test.py", lineno=1,
                msg="failed", args=(), exc_info=sys.exc_info(),
            )

        data = json.loads(JSONFormatter().format(record))

        assert any("ValueError: boom" in line for line in data["exception"])


class TestContextFilter:
    def test_adds_defaults(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        assert record.request_id is None
        assert record.day is None

    def test_keeps_existing_values(self):
        record = make_record()
        record.user_id = "user-1"

        ContextFilter().filter(record)

        assert record.user_id == "user-1"


class TestLoggingConfig:
    def test_json_format_selected(self):
        with patch("vibestudy.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "debug"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["loggers"]["vibestudy"]["level"] == "DEBUG"

    def test_text_format_default(self):
        with patch("vibestudy.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert "json" not in config["formatters"]


def test_get_log_context_drops_none():
    context = get_log_context(user_id="user-1", day=3, sequence=9)

    assert context == {"user_id": "user-1", "day": 3, "sequence": 9}


def test_module_loggers_are_children_of_app_logger():
    assert get_logger().name == "vibestudy"
    assert get_logger("vibestudy.app.services").name.startswith("vibestudy.")
