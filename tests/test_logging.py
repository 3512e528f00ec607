"""Tests for logging configuration module."""

import json
import logging
from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest
import structlog

from cron_weather.core.logging import _add_otel_context, configure_logging, resolve_logging_options


class TestResolveLoggingOptions:
    """Tests for mapping ENV onto logging options."""

    def test_local_forces_debug_console(self) -> None:
        """Test that ENV=local always logs DEBUG to the console."""
        assert resolve_logging_options("local", "WARNING") == ("DEBUG", False)

    def test_prod_uses_json(self) -> None:
        """Test that ENV=prod renders JSON at the configured level."""
        assert resolve_logging_options("prod", "WARNING") == ("WARNING", True)

    def test_other_env_uses_console(self) -> None:
        """Test that any other ENV uses the console renderer."""
        assert resolve_logging_options("", "INFO") == ("INFO", False)


class TestConfigureLogging:
    """Tests for configure_logging function."""

    @pytest.fixture(autouse=True)
    def restore_logging(self) -> Generator[None]:
        """Put the root logger and structlog back the way they were."""
        root_logger = logging.getLogger()
        handlers, level = list(root_logger.handlers), root_logger.level
        yield
        root_logger.handlers[:] = handlers
        root_logger.setLevel(level)
        structlog.reset_defaults()

    def test_configure_logging_sets_log_level(self) -> None:
        """Test that configure_logging sets the root logger level."""
        configure_logging(log_level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

        configure_logging(log_level="warning")
        assert logging.getLogger().level == logging.WARNING

    def test_configure_logging_sets_noisy_loggers_to_warning(self) -> None:
        """Test that noisy third-party loggers are set to WARNING level."""
        configure_logging(log_level="DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert logging.getLogger("aiosqlite").level == logging.WARNING

    def test_configure_logging_replaces_handlers(self) -> None:
        """Test that existing root handlers are replaced by a single handler."""
        root_logger = logging.getLogger()
        root_logger.addHandler(logging.NullHandler())

        configure_logging()

        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_json_logs(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test that JSON mode emits one JSON object per event with bound context."""
        configure_logging(log_level="INFO", json_logs=True)

        structlog.get_logger("cron_weather.test").bind(task_id="t-1").info("job_started", chat_id=42)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "job_started"
        assert record["task_id"] == "t-1"
        assert record["chat_id"] == 42
        assert record["level"] == "info"


class TestAddOtelContext:
    """Tests for the OpenTelemetry log processor."""

    def test_adds_ids_for_recording_span(self) -> None:
        """Test that trace and span IDs are added for a recording span."""
        span = MagicMock()
        span.is_recording.return_value = True
        span.get_span_context.return_value = MagicMock(trace_id=0x1F, span_id=0x2A)

        with patch("cron_weather.core.logging.trace.get_current_span", return_value=span):
            event = _add_otel_context(MagicMock(), "info", {"event": "x"})

        assert event["trace_id"] == f"{0x1F:032x}"
        assert event["span_id"] == f"{0x2A:016x}"

    def test_no_ids_without_span(self) -> None:
        """Test that events are untouched outside a span."""
        event = _add_otel_context(MagicMock(), "info", {"event": "x"})
        assert "trace_id" not in event
