"""Tests for logging configuration and formatters."""

import json
import logging
import sys
from datetime import datetime, timezone

import pytest

from matchengine.dispatch import Priority
from matchengine.logging import ComponentLoggerAdapter, get_logger
from matchengine.logging.config import (
    SERVICE_NAME,
    ContextualFilter,
    JSONFormatter,
    KeyValueFormatter,
    configure_logging,
)
from matchengine.logging.context import clear_log_context, log_context


@pytest.fixture(autouse=True)
def clean_context():
    """Clear logging context before and after each test."""
    clear_log_context()
    yield
    clear_log_context()


@pytest.fixture
def logger():
    """Create a test logger for building records."""
    test_logger = logging.getLogger("test_logger")
    test_logger.setLevel(logging.DEBUG)
    test_logger.handlers.clear()

    yield test_logger

    test_logger.handlers.clear()


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way pytest configured it."""
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level

    yield

    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


def make_record(logger, message="Test message", extra=None):
    return logger.makeRecord("test", logging.INFO, "test.py", 1, message, (), None, extra=extra)


def test_json_formatter_basic(logger):
    """Test JSONFormatter produces valid JSON with mandatory fields."""
    log_obj = json.loads(JSONFormatter().format(make_record(logger)))

    assert log_obj["level"] == "INFO"
    assert log_obj["logger"] == "test"
    assert log_obj["message"] == "Test message"
    assert "name" not in log_obj


def test_json_formatter_with_extra_fields(logger):
    """Test JSONFormatter includes extra fields and stringifies objects."""
    computed_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    record = make_record(
        logger,
        extra={
            "event": "task.completed",
            "attempt": 2,
            "requeued": True,
            "priority": Priority.HIGH,
            "computed_at": computed_at,
        },
    )

    log_obj = json.loads(JSONFormatter().format(record))

    assert log_obj["event"] == "task.completed"
    assert log_obj["attempt"] == 2
    assert log_obj["requeued"] is True
    assert log_obj["priority"] == "HIGH"
    assert log_obj["computed_at"] == computed_at.isoformat()


def test_json_formatter_includes_exception(logger):
    """Test exception text is rendered into exc_info."""
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logger.makeRecord(
            "test", logging.ERROR, "test.py", 1, "Failed", (), sys.exc_info()
        )

    log_obj = json.loads(JSONFormatter().format(record))

    assert "RuntimeError: boom" in log_obj["exc_info"]


def test_timestamp_format_in_json(logger):
    """Test that JSON formatter produces ISO-8601 UTC timestamps."""
    timestamp = json.loads(JSONFormatter().format(make_record(logger)))["timestamp"]

    assert timestamp.endswith("Z")
    assert "T" in timestamp
    assert len(timestamp) == 24  # 2026-03-01T10:30:00.123Z


def test_contextual_filter_adds_static_fields(logger):
    """Test ContextualFilter adds service and environment fields."""
    record = make_record(logger)

    assert ContextualFilter(environment="test").filter(record) is True
    assert record.service == SERVICE_NAME
    assert record.environment == "test"


def test_contextual_filter_adds_context_fields(logger):
    """Test ContextualFilter adds fields from log context."""
    with log_context(task_id="t-1", worker="worker-3"):
        record = make_record(logger)
        ContextualFilter().filter(record)

    assert record.task_id == "t-1"
    assert record.worker == "worker-3"


def test_explicit_extra_wins_over_context(logger):
    """Test a field passed via extra is not overwritten by context."""
    with log_context(task_id="from-context"):
        record = make_record(logger, extra={"task_id": "from-extra"})
        ContextualFilter().filter(record)

    assert record.task_id == "from-extra"


def test_json_formatter_with_context(logger):
    """Test full pipeline: context + filter + JSON formatter."""
    with log_context(task_id="t-1", student_id="s-1"):
        record = make_record(logger, "Computing pair", extra={"event": "task.started"})
        ContextualFilter(environment="test").filter(record)
        log_obj = json.loads(JSONFormatter().format(record))

    assert log_obj["message"] == "Computing pair"
    assert log_obj["event"] == "task.started"
    assert log_obj["service"] == "match-engine"
    assert log_obj["environment"] == "test"
    assert log_obj["task_id"] == "t-1"
    assert log_obj["student_id"] == "s-1"


def test_key_value_formatter_with_extras(logger):
    """Test KeyValueFormatter appends sorted key=value pairs."""
    formatter = KeyValueFormatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    record = make_record(
        logger,
        extra={"event": "queue.saturated", "depth": 42, "requeued": False, "error": "two words", "last": None},
    )

    output = formatter.format(record)

    assert "[INFO] test: Test message" in output
    assert output.endswith('depth=42 error="two words" event=queue.saturated last=null requeued=false')


def test_key_value_formatter_skips_static_fields(logger):
    """Test service and environment are left out of readable output."""
    formatter = KeyValueFormatter("%(message)s")
    record = make_record(logger)
    ContextualFilter(environment="test").filter(record)

    assert formatter.format(record) == "Test message"


def test_configure_logging_invalid_level():
    """Test configure_logging rejects invalid log level."""
    with pytest.raises(ValueError, match="Invalid log level"):
        configure_logging(level="INVALID")


def test_configure_logging_invalid_format():
    """Test configure_logging rejects invalid format type."""
    with pytest.raises(ValueError, match="Invalid log format"):
        configure_logging(format_type="invalid")


@pytest.mark.parametrize(
    "format_type,formatter_class",
    [("json", JSONFormatter), ("key-value", KeyValueFormatter)],
)
def test_configure_logging_formats(restore_root_logger, format_type, formatter_class):
    """Test configure_logging installs one handler with the chosen formatter."""
    configure_logging(level="DEBUG", format_type=format_type, environment="test")

    root_logger = logging.getLogger()

    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, formatter_class)
    assert root_logger.level == logging.DEBUG


def test_configure_logging_quiets_apscheduler(restore_root_logger):
    """Test the scheduler's logger is held at WARNING or above."""
    configure_logging(level="DEBUG")

    assert logging.getLogger("apscheduler").level == logging.WARNING


def test_get_logger_adds_component(caplog):
    """Test component loggers stamp records and keep per-call extras."""
    logger = get_logger("matchengine.tests", component="dispatcher")

    with caplog.at_level(logging.INFO, logger="matchengine.tests"):
        logger.info("Task enqueued", extra={"event": "task.enqueued"})

    assert isinstance(logger, ComponentLoggerAdapter)
    record = caplog.records[-1]
    assert record.component == "dispatcher"
    assert record.event == "task.enqueued"


def test_get_logger_without_component():
    """Test a plain logger is returned when no component is given."""
    assert isinstance(get_logger("matchengine.tests"), logging.Logger)
