"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Extra fields in log entries
"""

from __future__ import annotations

import json
import logging
import sys
from io import StringIO

import pytest

from safe_update.config import LoggingConfig
from safe_update.logging import JSONFormatter, get_logger, setup_logging

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def stream() -> StringIO:
    """Capture JSON output of the safe_update logger."""
    output = StringIO()
    logger = setup_logging(level="DEBUG")
    logger.handlers[0].setStream(output)
    return output


def _record(msg: str = "Test message", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="safe_update.test",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        entry = json.loads(JSONFormatter().format(_record()))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "safe_update.test"
        assert entry["message"] == "Test message"
        assert "timestamp" in entry

    def test_format_with_extra_fields(self) -> None:
        """Test that extra fields are merged into the entry."""
        entry = json.loads(
            JSONFormatter().format(_record(module_path="services/api", old_state="idle"))
        )

        assert entry["module_path"] == "services/api"
        assert entry["old_state"] == "idle"

    def test_none_extra_fields_are_dropped(self) -> None:
        """Test that extra fields set to None are omitted."""
        entry = json.loads(JSONFormatter().format(_record(commit_ref=None)))
        assert "commit_ref" not in entry

    def test_format_with_exception(self) -> None:
        """Test that exception info is formatted."""
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]

    def test_timestamp_is_utc_iso8601(self) -> None:
        """Test timestamp formatting."""
        entry = json.loads(JSONFormatter().format(_record()))
        assert entry["timestamp"].endswith("+00:00")

    def test_non_serializable_extra_uses_str(self) -> None:
        """Test that values json cannot encode are stringified."""
        entry = json.loads(JSONFormatter().format(_record(error=OSError("x"))))
        assert entry["error"] == "x"


# =============================================================================
# Tests for setup_logging
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self) -> None:
        """Test that the package logger is returned."""
        logger = setup_logging()
        assert logger.name == "safe_update"

    def test_sets_level(self) -> None:
        """Test log level handling."""
        logger = setup_logging(level="warning")
        assert logger.level == logging.WARNING

    def test_json_format(self) -> None:
        """Test that the JSON formatter is installed by default."""
        logger = setup_logging()
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_plain_format(self) -> None:
        """Test that plain text output can be selected."""
        logger = setup_logging(json_format=False)
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_clears_existing_handlers(self) -> None:
        """Test that repeated setup does not duplicate handlers."""
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

    def test_no_propagation(self) -> None:
        """Test that records do not propagate to the root logger."""
        assert setup_logging().propagate is False

    def test_stderr_by_default_from_config(self) -> None:
        """Test that a default LoggingConfig logs to stderr."""
        logger = setup_logging(LoggingConfig())
        assert logger.handlers[0].stream is sys.stderr

    def test_config_overrides_keywords(self) -> None:
        """Test that config values take precedence."""
        logger = setup_logging(
            LoggingConfig(level="error", log_to_stdout=True, json_format=False),
            level="DEBUG",
        )
        assert logger.level == logging.ERROR
        assert logger.handlers[0].stream is sys.stdout
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)


# =============================================================================
# Tests for get_logger
# =============================================================================


class TestGetLogger:
    """Tests for get_logger function."""

    def test_adds_prefix(self) -> None:
        """Test that the package prefix is added."""
        assert get_logger("custom").name == "safe_update.custom"

    def test_does_not_duplicate_prefix(self) -> None:
        """Test that module names are kept as is."""
        assert get_logger("safe_update.updates").name == "safe_update.updates"

    def test_child_logs_reach_package_handler(self, stream: StringIO) -> None:
        """Test structured output from a child logger."""
        get_logger("safe_update.gates").info(
            "Gate evaluated", extra={"gate": "security", "score": 100.0}
        )

        entry = json.loads(stream.getvalue().strip())
        assert entry["message"] == "Gate evaluated"
        assert entry["gate"] == "security"
        assert entry["score"] == 100.0
