"""Unit tests for model selection and resilient execution."""

from __future__ import annotations

import httpx
import pytest

from conftest import make_settings, user_messages
from modelgate.exceptions import (
    ConfigError,
    PermanentRequestError,
    TransientProviderError,
    UnknownModelError,
)
from modelgate.execution.circuit_breaker import CircuitState
from modelgate.llm.cost_tracker import TokenUsage
from modelgate.llm.mock import MockTransport
from modelgate.llm.model_service import ModelService


def upstream_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"Upstream returned {status}", request=request, response=response)


class TestSelectModel:
    """Test the selection order."""

    def test_preferred_model_alias(self, model_service):
        selection = model_service.select_model(preferred_model="claude-sonnet", task_type="news")
        assert selection.model == "sonnet"
        assert selection.provider == "vercel-gateway"
        assert selection.reason == "preferred"
        assert selection.fallback_chain == ("grok", "groq", "openrouter-sonnet")

    def test_unknown_preferred_model_is_ignored(self, model_service):
        selection = model_service.select_model(preferred_model="gpt-9")
        assert selection.model == "openrouter-llama"
        assert selection.reason == "default"

    def test_task_map(self, model_service):
        selection = model_service.select_model(task_type="quick-pulse")
        assert selection.model == "openrouter-llama"
        assert selection.provider == "openrouter"
        assert selection.reason == "task-map"
        assert selection.fallback_chain == ("groq",)

    def test_task_map_is_case_insensitive(self, model_service):
        assert model_service.select_model(task_type="  Research ").model == "openrouter-opus"

    @pytest.mark.parametrize(
        "task,model",
        [
            ("tech-scan", "groq"),
            ("quick-summary", "groq"),
            ("chart-interpretation", "sonnet"),
            ("reasoning-deep", "sonnet"),
            ("market-news-digest", "grok"),
        ],
    )
    def test_task_keywords(self, model_service, task, model):
        selection = model_service.select_model(task_type=task)
        assert selection.model == model
        assert selection.reason == "task-keyword"

    def test_complexity_by_message_count(self, model_service):
        assert model_service.select_model(message_count=12).reason == "default"
        selection = model_service.select_model(message_count=13)
        assert selection.model == "sonnet"
        assert selection.reason == "complexity"

    def test_complexity_by_input_size(self, model_service):
        selection = model_service.select_model(task_type="unmapped", input_chars=2001)
        assert selection.model == "sonnet"
        assert selection.reason == "complexity"

    def test_default(self, model_service):
        selection = model_service.select_model()
        assert selection.model == "openrouter-llama"
        assert selection.reason == "default"
        assert selection.to_dict()["fallback_chain"] == ["groq"]

    def test_unhealthy_provider_switches_to_cross_provider(self, model_service, health):
        health.force_open_circuit("openrouter")

        selection = model_service.select_model(task_type="news")

        assert selection.model == "grok"
        assert selection.provider == "vercel-gateway"
        assert selection.reason == "provider-fallback"
        assert health.get_metrics("openrouter").fallback_requests == 1

    def test_stays_when_equivalent_also_unhealthy(self, model_service, health):
        health.force_open_circuit("openrouter")
        health.force_open_circuit("vercel-gateway")
        selection = model_service.select_model()
        assert selection.model == "openrouter-llama"
        assert selection.reason == "default"

    def test_fallback_disabled(self, registry, health, cost_tracker):
        service = ModelService(
            registry,
            health,
            cost_tracker,
            make_settings(enable_provider_fallback=False),
            transport_factory=lambda model: MockTransport(name=model.transport),
        )
        health.force_open_circuit("openrouter")

        selection = service.select_model()

        assert selection.model == "openrouter-llama"
        assert selection.fallback_chain == ()
        assert service.select_model(preferred_model="openrouter-opus").fallback_chain == (
            "openrouter-sonnet",
            "openrouter-grok",
            "openrouter-llama",
        )


class TestGenerateChat:
    """Test non-streaming execution."""

    async def test_success(self, model_service, transports, cost_tracker, health):
        result = await model_service.generate_chat("openrouter-llama", user_messages("hi"), user_id="u-1")

        assert result.text == "mock response: hi"
        assert result.model == "openrouter-llama"
        assert result.provider == "openrouter"
        assert result.is_fallback is False
        assert result.usage == TokenUsage(10, 5, 15)
        assert result.cost_usd == pytest.approx(10 / 1000 * 0.00012 + 5 / 1000 * 0.0003)

        assert cost_tracker.get_total_stats().total_requests == 1
        assert cost_tracker.get_user_stats("u-1").total_tokens == 15
        assert health.get_metrics("openrouter").successful_requests == 1
        assert model_service.get_metrics()["openrouter-llama"].total_completed == 1

    async def test_model_defaults_and_overrides(self, model_service, transports):
        await model_service.generate_chat("llama-70b", user_messages())
        await model_service.generate_chat("openrouter-llama", user_messages(), temperature=0.9, max_tokens=64)

        first, second = transports["openrouter-llama"].requests
        assert first.model_id == "meta-llama/llama-3.3-70b-instruct"
        assert first.temperature == 0.25
        assert first.max_output_tokens == 2048
        assert first.timeout_seconds == 30.0
        assert second.temperature == 0.9
        assert second.max_output_tokens == 64

    async def test_provider_cost_wins(self, model_service, transports):
        transports["openrouter-llama"] = MockTransport(name="openrouter", provider_cost=0.25)
        result = await model_service.generate_chat("openrouter-llama", user_messages())
        assert result.cost_usd == 0.25

    async def test_unknown_model(self, model_service, transports):
        with pytest.raises(UnknownModelError):
            await model_service.generate_chat("gpt-9", user_messages())
        assert transports == {}

    async def test_transient_error_uses_same_provider_fallback(self, model_service, transports, health):
        transports["openrouter-opus"] = MockTransport(name="openrouter", outcomes=[upstream_error(503)])

        result = await model_service.generate_chat("openrouter-opus", user_messages())

        assert result.model == "openrouter-sonnet"
        assert result.is_fallback is True
        metrics = health.get_metrics("openrouter")
        assert metrics.failed_requests == 1
        assert metrics.successful_requests == 1
        assert model_service.get_metrics()["openrouter-opus"].total_errors == 1

    async def test_cross_provider_fallback_without_same_provider_hop(self, model_service, transports):
        transports["openrouter-llama"] = MockTransport(name="openrouter", outcomes=[upstream_error(502)])

        result = await model_service.generate_chat("openrouter-llama", user_messages())

        assert result.model == "groq"
        assert result.provider == "vercel-gateway"
        assert result.is_fallback is True

    async def test_cross_provider_after_same_provider_fails(self, model_service, transports):
        transports["openrouter-opus"] = MockTransport(name="openrouter", outcomes=[upstream_error(503)])
        transports["openrouter-sonnet"] = MockTransport(name="openrouter", outcomes=[upstream_error(503)])

        result = await model_service.generate_chat("openrouter-opus", user_messages())

        assert result.model == "sonnet"
        assert "openrouter-grok" not in transports

    async def test_last_error_when_every_hop_fails(self, model_service, transports):
        for key, transport in (
            ("openrouter-opus", "openrouter"),
            ("openrouter-sonnet", "openrouter"),
            ("sonnet", "vercel-gateway"),
        ):
            transports[key] = MockTransport(name=transport, outcomes=[upstream_error(503)])

        with pytest.raises(TransientProviderError) as exc_info:
            await model_service.generate_chat("openrouter-opus", user_messages())

        assert exc_info.value.model_key == "sonnet"
        assert exc_info.value.provider == "vercel-gateway"
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
        assert len(transports["openrouter-opus"].requests) == 1
        assert len(transports["sonnet"].requests) == 1

    async def test_permanent_error_is_not_retried(self, model_service, transports, health):
        transports["openrouter-opus"] = MockTransport(name="openrouter", outcomes=[upstream_error(400)])

        with pytest.raises(PermanentRequestError) as exc_info:
            await model_service.generate_chat("openrouter-opus", user_messages())

        assert exc_info.value.status == 400
        assert "openrouter-sonnet" not in transports
        assert health.get_metrics("openrouter").failed_requests == 1

    async def test_config_error_is_not_retried_or_counted(self, registry, health, cost_tracker, settings, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        service = ModelService(registry, health, cost_tracker, settings)

        with pytest.raises(ConfigError) as exc_info:
            await service.generate_chat("openrouter-llama", user_messages())

        assert exc_info.value.env_var == "OPENROUTER_API_KEY"
        assert exc_info.value.model_key == "openrouter-llama"
        metrics = health.get_metrics("openrouter")
        assert metrics.failed_requests == 0
        assert health.get_health_status("openrouter").circuit_state is CircuitState.CLOSED
        assert service.get_metrics()["openrouter-llama"].total_errors == 1

    async def test_repeated_failures_open_circuit_and_reroute(self, model_service, transports, health):
        transports["openrouter-llama"] = MockTransport(
            name="openrouter", outcomes=[upstream_error(400) for _ in range(5)]
        )
        for _ in range(5):
            with pytest.raises(PermanentRequestError):
                await model_service.generate_chat("openrouter-llama", user_messages())

        assert health.is_provider_healthy("openrouter") is False
        selection = model_service.select_model()
        assert selection.model == "groq"
        assert selection.reason == "provider-fallback"


class TestStreamChat:
    """Test streaming execution."""

    async def test_stream_success(self, model_service, cost_tracker):
        finished = []

        stream = await model_service.stream_chat(
            "openrouter-llama", user_messages("hello there"), on_finish=finished.append
        )
        chunks = [chunk async for chunk in stream]

        assert "".join(chunks) == "mock response: hello there"
        assert chunks[0] == "mock"
        assert stream.model == "openrouter-llama"
        assert stream.is_fallback is False
        assert stream.finish is not None
        assert stream.finish.usage == TokenUsage(10, 5, 15)
        assert finished == [stream.finish]
        assert cost_tracker.get_total_stats().total_requests == 1

    async def test_async_on_finish_is_awaited(self, model_service):
        finished = []

        async def save(finish):
            finished.append(finish.text)

        stream = await model_service.stream_chat("groq", user_messages("x"), on_finish=save)
        assert await stream.text() == "mock response: x"
        assert finished == ["mock response: x"]

    async def test_connection_failure_falls_back_before_first_chunk(self, model_service, transports):
        transports["openrouter-opus"] = MockTransport(name="openrouter", outcomes=[upstream_error(503)])

        stream = await model_service.stream_chat("openrouter-opus", user_messages())

        assert stream.model == "openrouter-sonnet"
        assert stream.is_fallback is True
        assert (await stream.text()).startswith("mock response")

    async def test_mid_stream_error_is_recorded_and_raised(self, model_service, transports, health, cost_tracker):
        transports["openrouter-llama"] = MockTransport(
            name="openrouter", fail_mid_stream=httpx.ReadError("connection reset")
        )
        finished = []
        stream = await model_service.stream_chat(
            "openrouter-llama", user_messages(), on_finish=finished.append
        )

        chunks = []
        with pytest.raises(TransientProviderError):
            async for chunk in stream:
                chunks.append(chunk)

        assert chunks == ["mock"]
        assert finished == []
        assert health.get_metrics("openrouter").failed_requests == 1
        assert cost_tracker.get_total_stats().total_requests == 0

    async def test_abandoned_stream_is_counted(self, model_service, health, cost_tracker):
        finished = []
        stream = await model_service.stream_chat(
            "openrouter-llama", user_messages("hello there"), on_finish=finished.append
        )

        chunks = stream.__aiter__()
        assert await chunks.__anext__() == "mock"
        await chunks.aclose()

        metric = model_service.get_metrics()["openrouter-llama"]
        assert metric.total_requests == 1
        assert metric.total_aborted == 1
        assert metric.total_completed == 0
        assert metric.total_errors == 0
        assert finished == []
        assert stream.finish is None
        assert health.get_metrics("openrouter").failed_requests == 0
        assert cost_tracker.get_total_stats().total_requests == 0

    async def test_completed_stream_is_not_counted_as_aborted(self, model_service):
        stream = await model_service.stream_chat("groq", user_messages())
        await stream.text()
        assert model_service.get_metrics()["groq"].total_aborted == 0

    async def test_stream_is_single_use(self, model_service):
        stream = await model_service.stream_chat("groq", user_messages())
        await stream.text()
        with pytest.raises(RuntimeError):
            stream.__aiter__()


class TestReporting:
    """Test reporting accessors and shutdown."""

    async def test_reports_and_close(self, model_service, transports):
        await model_service.generate_chat("sonnet", user_messages())

        assert model_service.get_provider_health()["vercel-gateway"].successful_requests == 1
        assert model_service.get_provider_status()["vercel-gateway"].is_healthy is True
        assert model_service.get_cost_stats().by_model["anthropic/claude-sonnet-4.5"].total_requests == 1

        await model_service.aclose()
        assert transports["sonnet"].closed is True
