"""
Unit tests for structured logging and run events.
"""

import json
import logging
import sys

import pytest

from harvester.monitoring.events import emit_event
from harvester.monitoring.logging import (
    ROOT_LOGGER,
    JsonFormatter,
    LoggingOptions,
    TextFormatter,
    options_from_settings,
    setup_logging,
    with_context,
)


def _record(msg="hello", **extra):
    record = logging.LogRecord("harvester.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def package_logger():
    """Restore the package logger after setup_logging() changes it."""
    logger = logging.getLogger(ROOT_LOGGER)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    handlers, level, propagate = saved
    for h in handlers:
        logger.addHandler(h)
    logger.setLevel(level)
    logger.propagate = propagate


class TestFormatters:
    """Tests for JsonFormatter and TextFormatter."""

    def test_json(self):
        """Context keys and payloads become JSON fields."""
        out = json.loads(
            JsonFormatter().format(_record(source="thekla", run_id="r1", event="run.completed", payload={"new": 2}))
        )
        assert out["message"] == "hello"
        assert out["level"] == "INFO"
        assert out["source"] == "thekla"
        assert out["event"] == "run.completed"
        assert out["payload"] == {"new": 2}
        assert "stage" not in out

    def test_text(self):
        """Context is rendered in brackets before the message."""
        line = TextFormatter().format(_record(source="thekla", run_id="r1", stage="fetch"))
        assert line == "INFO harvester.test [source=thekla run=r1 stage=fetch] hello"

    def test_text_without_context(self):
        """No brackets when there is no context."""
        assert TextFormatter().format(_record()) == "INFO harvester.test hello"

    def test_exceptions(self):
        """Exception text is included."""
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        assert "ValueError: bad" in TextFormatter().format(record)
        assert "ValueError: bad" in json.loads(JsonFormatter().format(record))["exc_info"]


class TestContext:
    """Tests for with_context and emit_event."""

    def test_with_context_nests(self, caplog):
        """Nested adapters keep outer context and add their own."""
        logger = logging.getLogger("harvester.tests.context")
        log = with_context(with_context(logger, run_id="r1", source="thekla"), stage="validate")

        with caplog.at_level(logging.INFO, logger="harvester.tests.context"):
            log.info("checked")

        record = caplog.records[-1]
        assert (record.run_id, record.source, record.stage) == ("r1", "thekla", "validate")

    def test_emit_event(self, caplog):
        """Events carry their name and payload at the requested level."""
        logger = logging.getLogger("harvester.tests.events")

        with caplog.at_level(logging.INFO, logger="harvester.tests.events"):
            emit_event(with_context(logger, source="thekla"), "job.stuck", {"running_minutes": 45}, level="warning")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.getMessage() == "job.stuck running_minutes=45"
        assert record.event == "job.stuck"
        assert record.payload == {"running_minutes": 45}
        assert record.source == "thekla"

    def test_event_default_level(self, caplog):
        """Failure events default to ERROR, others to INFO."""
        logger = logging.getLogger("harvester.tests.events")

        with caplog.at_level(logging.INFO, logger="harvester.tests.events"):
            emit_event(logger, "run.failed", {"error": "boom"})
            emit_event(logger, "run.started")

        failed, started = caplog.records[-2:]
        assert failed.levelno == logging.ERROR
        assert started.levelno == logging.INFO
        assert started.getMessage() == "run.started"

    def test_trigger_context(self):
        """Trigger is carried like the other context fields."""
        line = TextFormatter().format(_record(source="thekla", trigger="manual"))
        assert line == "INFO harvester.test [source=thekla trigger=manual] hello"


class TestSetup:
    """Tests for setup_logging."""

    def test_console_and_file(self, package_logger, tmp_path):
        """Handlers are replaced on every call; the file handler writes JSON."""
        setup_logging(LoggingOptions(level="DEBUG", json_logs=True, log_dir=tmp_path))
        setup_logging(LoggingOptions(level="DEBUG", json_logs=True, log_dir=tmp_path))

        assert len(package_logger.handlers) == 2
        assert package_logger.level == logging.DEBUG
        assert package_logger.propagate is False
        assert logging.getLogger("httpx").level == logging.WARNING

        logging.getLogger("harvester.tests.setup").debug("written")
        for h in package_logger.handlers:
            h.flush()
        line = (tmp_path / "harvester.log").read_text().strip().splitlines()[-1]
        assert json.loads(line)["message"] == "written"

    def test_options_from_settings(self, settings):
        """Options mirror the logging settings."""
        opts = options_from_settings(settings.model_copy(update={"LOG_LEVEL": "WARNING", "JSON_LOGS": True}))
        assert opts == LoggingOptions(level="WARNING", json_logs=True, log_dir=None)
