"""
Structured logging setup using structlog.

Modules log through logging.getLogger(__name__) with extra={...} fields;
the stdlib records are rendered by structlog so worker processes sharing
one terminal or log file stay distinguishable by pid and job id.
"""

import logging
import os
import sys
from typing import Any

import structlog
from opentelemetry import trace

from queuectl.config import get_settings

# Event fields that can carry arbitrary user input
TRUNCATED_FIELDS = ("command", "error")
MAX_FIELD_LENGTH = 500

LOG_FORMATS = ("json", "console")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add OpenTelemetry trace context to log records.

    Args:
        logger: The logger instance.
        method_name: The method name being called.
        event_dict: The event dictionary.

    Returns:
        The event dictionary with trace context added.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_process_id(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every record with the emitting process, one per `worker start`."""
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def truncate_fields(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Shorten job commands and error output so one job cannot flood the log."""
    for key in TRUNCATED_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > MAX_FIELD_LENGTH:
            event_dict[key] = value[:MAX_FIELD_LENGTH] + "..."
    return event_dict


def _renderer(log_format: str, stream: Any) -> Any:
    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {log_format!r}, expected one of {LOG_FORMATS}")
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=getattr(stream, "isatty", lambda: False)())


def setup_logging(
    level: str | None = None,
    stream: Any = None,
    log_format: str | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Optional level overriding the configured one.
        stream: Output stream, stderr by default so CLI output stays clean.
        log_format: "json" or "console", defaults to the configured format.
    """
    settings = get_settings()
    stream = stream or sys.stderr

    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    renderer = _renderer(log_format or settings.log_format, stream)

    # Applied to structlog and stdlib records alike
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        add_process_id,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
        truncate_fields,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    # Exactly one handler, however often setup runs
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # Reduce noise from third-party libraries
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """
    Bind context variables to all subsequent log messages.

    Args:
        **kwargs: Key-value pairs to add to log context.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context(*keys: str) -> None:
    """Unbind the given context variables, or all of them when none are named."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
