"""Logging configuration for the application.

Configures structlog to integrate with Python's logging module so that:
- Logs have correct log levels
- Scheduler and job logs carry their bound context (chat_id, task_id)
- Third-party library logs (httpx, SQLAlchemy) are formatted consistently
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog
from opentelemetry import trace

# ENV values with dedicated logging behaviour
ENV_LOCAL = "local"
ENV_PROD = "prod"


def _add_otel_context(
    logger: logging.Logger, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Add OpenTelemetry trace and span IDs to log events for correlation."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def resolve_logging_options(env: str, log_level: str) -> tuple[str, bool]:
    """
    Map the ENV setting onto a log level and renderer choice.

    Args:
        env: Deployment environment ("local", "prod" or anything else)
        log_level: Configured LOG_LEVEL

    Returns:
        Tuple of (log_level, json_logs)

    Example:
        >>> resolve_logging_options("local", "INFO")
        ('DEBUG', False)
        >>> resolve_logging_options("prod", "INFO")
        ('INFO', True)
    """
    if env == ENV_LOCAL:
        return "DEBUG", False
    if env == ENV_PROD:
        return log_level, True
    return log_level, False


def configure_logging(*, log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configure structlog to integrate with Python's logging module.

    This ensures:
    - Structlog logs use proper log levels (info, warning, error, etc.)
    - Third-party library logs go through structlog
    - Logs are output to stdout with consistent formatting

    Args:
        log_level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON lines instead of the colored console format
    """
    normalized_level = log_level.upper()

    # Shared processors for both structlog and stdlib logs
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_otel_context,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    # Formatter that processes stdlib logs through structlog
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, normalized_level))

    # Silence noisy third-party loggers (reduce to WARNING level)
    noisy_loggers = [
        "httpx",  # One INFO line per request, including the bot token in the URL
        "httpcore",  # Connection pool internals
        "aiosqlite",  # Cursor operations
        "sqlalchemy.engine",  # Statement echo outside DATABASE_ECHO
        "alembic.runtime.migration",  # Migration context chatter
        "opentelemetry.exporter.otlp.proto.http",  # OTLP export logs
    ]
    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
