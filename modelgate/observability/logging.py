"""Structured logging setup with OpenTelemetry correlation."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace

if TYPE_CHECKING:
    from modelgate.settings import Settings


def _add_trace_context(logger, method_name, event_dict):
    """Add OpenTelemetry trace context to log entries.

    Injects trace_id, span_id and trace_flags into every log message so
    provider attempts can be correlated with their spans.
    """
    span_context = trace.get_current_span().get_span_context()

    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
        event_dict["trace_flags"] = format(span_context.trace_flags, "02x")

    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog with OpenTelemetry correlation.

    In production (debug=false) events are rendered as JSON; in debug mode
    they go through the colored console renderer. Standard library logging
    (httpx, etc.) is bridged so third-party records share the same format.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_trace_context,
        structlog.processors.dict_tracebacks,
    ]

    final_renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if settings.debug
        else structlog.processors.JSONRenderer()
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ExtraAdder(),
            final_renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger()
    logger.debug(
        "Logging configured",
        log_level=settings.log_level,
        debug_mode=settings.debug,
        trace_correlation=True,
    )
