"""Unit tests for logging, metrics and tracing helpers."""

from __future__ import annotations

from opentelemetry.sdk.trace import TracerProvider
from prometheus_client import REGISTRY

from conftest import make_settings
from modelgate.llm.provider_health import ProviderHealthService
from modelgate.observability import setup_metrics, setup_tracing, span
from modelgate.observability.logging import _add_trace_context, setup_logging


class TestTraceContext:
    """Test trace ids merged into log events."""

    def test_no_span_leaves_event_alone(self):
        assert _add_trace_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_active_span_adds_ids(self):
        tracer = TracerProvider().get_tracer("tests")
        with tracer.start_as_current_span("attempt"):
            event = _add_trace_context(None, "info", {"event": "x"})
        assert len(event["trace_id"]) == 32
        assert len(event["span_id"]) == 16


class TestHelpers:
    """Test setup functions and the span helper."""

    def test_span_drops_none_attributes(self):
        with span("modelgate.test", {"model": "groq", "transport": None}) as current:
            assert current is not None

    def test_disabled_setup_is_noop(self):
        setup_metrics(enabled=False)
        setup_tracing(enabled=False)

    def test_setup_logging(self):
        setup_logging(make_settings(log_level="debug", debug=True))
        setup_logging(make_settings())


class TestMetrics:
    """Test Prometheus metrics published by services."""

    def test_circuit_state_gauge(self, clock):
        health = ProviderHealthService(providers=["metrics-test"], clock=clock)
        labels = {"transport": "metrics-test"}
        assert REGISTRY.get_sample_value("modelgate_circuit_state", labels) == 0

        health.force_open_circuit("metrics-test")
        assert REGISTRY.get_sample_value("modelgate_circuit_state", labels) == 2

        clock.advance(30)
        health.get_health_status("metrics-test")
        assert REGISTRY.get_sample_value("modelgate_circuit_state", labels) == 1
