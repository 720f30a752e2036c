"""Observability utilities for modelgate.

Provides Prometheus metrics and OpenTelemetry tracing helpers. Logging
configuration lives in :mod:`modelgate.observability.logging`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from prometheus_client import Counter, Gauge, Histogram, start_http_server

LLM_CALL_DURATION = Histogram(
    "modelgate_llm_call_duration_seconds",
    "LLM API call duration",
    ["transport", "model"],
)

LLM_REQUEST_COUNT = Counter(
    "modelgate_llm_requests_total",
    "LLM requests by outcome",
    ["transport", "model", "outcome"],  # success, error, fallback, aborted
)

LLM_TOKENS = Counter(
    "modelgate_llm_tokens_total",
    "Tokens consumed",
    ["transport", "model", "direction"],  # input, output
)

LLM_COST_USD = Counter(
    "modelgate_llm_cost_usd_total",
    "Accumulated provider cost in USD",
    ["transport", "model"],
)

CIRCUIT_STATE = Gauge(
    "modelgate_circuit_state",
    "Circuit breaker state per transport (0=closed, 1=half-open, 2=open)",
    ["transport"],
)

RATE_LIMIT_QUEUE_DEPTH = Gauge(
    "modelgate_rate_limit_queue_depth",
    "Tasks waiting in the outbound rate limiter queue",
)


def setup_tracing(service_name: str = "modelgate", enabled: bool = True) -> None:
    """Install an OpenTelemetry tracer provider.

    Exporters are left to the host application; without one, spans still
    carry ids that the log processor copies into every event.

    Args:
        service_name: Name of the service for trace identification
        enabled: Whether to enable tracing
    """
    logger = structlog.get_logger()

    if not enabled:
        logger.debug("OpenTelemetry tracing disabled by settings")
        return

    resource = Resource.create({"service.name": service_name})
    trace.set_tracer_provider(TracerProvider(resource=resource))


def setup_metrics(port: int = 9090, enabled: bool = True) -> None:
    """Start Prometheus metrics server.

    Args:
        port: Port to expose metrics on
        enabled: Whether to enable metrics server
    """
    logger = structlog.get_logger()

    if not enabled:
        logger.debug("Prometheus metrics disabled by settings")
        return

    start_http_server(port)
    logger.info("Prometheus metrics server started", port=port)


def get_tracer(name: str) -> trace.Tracer:
    """Get an OpenTelemetry tracer."""
    return trace.get_tracer(name)


@contextmanager
def span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[trace.Span]:
    """Context manager for creating a trace span.

    Args:
        name: Span name
        attributes: Span attributes; None values are dropped

    Example:
        with span("llm.generate", {"model": "sonnet"}):
            result = await transport.complete(request)
    """
    tracer = get_tracer("modelgate")
    with tracer.start_as_current_span(name) as span_obj:
        for key, value in (attributes or {}).items():
            if value is not None:
                span_obj.set_attribute(key, value)
        yield span_obj
