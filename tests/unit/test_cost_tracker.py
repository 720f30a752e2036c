"""Unit tests for token usage extraction and cost tracking."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from modelgate.llm.cost_tracker import (
    CostTracker,
    TokenUsage,
    calculate_cost,
    compare_costs,
    create_cost_record,
    estimate_cost,
    extract_token_usage,
    format_cost_usd,
)
from modelgate.llm.model_registry import ModelDefinition


@pytest.fixture
def sonnet() -> ModelDefinition:
    return ModelDefinition(
        key="sonnet",
        id="anthropic/claude-sonnet-4.5",
        transport="vercel-gateway",
        cost_per_1k_input_usd=0.003,
        cost_per_1k_output_usd=0.015,
    )


@pytest.fixture
def llama() -> ModelDefinition:
    return ModelDefinition(
        key="openrouter-llama",
        id="meta-llama/llama-3.3-70b-instruct",
        transport="openrouter",
        cost_per_1k_input_usd=0.00012,
        cost_per_1k_output_usd=0.0003,
    )


class TestExtractTokenUsage:
    """Test usage normalization across provider field names."""

    def test_openai_field_names(self):
        usage = extract_token_usage({"prompt_tokens": 12, "completion_tokens": 30, "total_tokens": 42})
        assert usage == TokenUsage(12, 30, 42)

    def test_camel_case_field_names(self):
        usage = extract_token_usage({"promptTokens": 3, "completionTokens": 4})
        assert usage == TokenUsage(3, 4, 7)

    def test_input_output_attributes(self):
        usage = extract_token_usage(SimpleNamespace(input_tokens=5, output_tokens=6))
        assert usage == TokenUsage(5, 6, 11)

    def test_partial_usage(self):
        usage = extract_token_usage({"total_tokens": 9})
        assert usage == TokenUsage(None, None, 9)

    @pytest.mark.parametrize("raw", [None, {}, "usage", {"prompt_tokens": "12"}, {"other": 1}])
    def test_unrecognized_usage(self, raw):
        assert extract_token_usage(raw) is None


class TestCalculateCost:
    """Test per-1k pricing."""

    def test_thousand_tokens_each_way(self, sonnet):
        cost = calculate_cost(sonnet, TokenUsage(input_tokens=1000, output_tokens=1000))
        assert cost.input_cost_usd == pytest.approx(0.003)
        assert cost.output_cost_usd == pytest.approx(0.015)
        assert cost.total_cost_usd == pytest.approx(0.018)
        assert cost.total_tokens == 2000

    def test_missing_usage_costs_nothing(self, sonnet):
        cost = calculate_cost(sonnet, None)
        assert cost.total_cost_usd == 0
        assert cost.total_tokens == 0

    def test_reported_total_is_kept(self, sonnet):
        cost = calculate_cost(sonnet, TokenUsage(100, 50, 175))
        assert cost.total_tokens == 175

    def test_provider_cost_overrides_computed(self, llama):
        record = create_cost_record(llama, TokenUsage(1000, 1000), override_cost=0.5, timestamp=10.0)
        assert record.total_cost_usd == 0.5
        assert record.input_cost_usd == pytest.approx(0.00012)
        assert record.provider == "openrouter"
        assert record.model == "meta-llama/llama-3.3-70b-instruct"
        assert record.timestamp == 10.0

    def test_estimate_and_compare(self, sonnet, llama):
        estimate = estimate_cost(sonnet, 2000, 500)
        assert estimate.total_cost_usd == pytest.approx(0.0135)

        comparison = compare_costs(sonnet, llama, 1000, 1000)
        assert comparison["cheaper_model"] == llama.id
        assert comparison["savings"] == pytest.approx(0.018 - 0.00042)
        assert 0 < comparison["savings_percent"] < 100


class TestCostTracker:
    """Test aggregation buckets."""

    def test_records_into_every_bucket(self, sonnet, llama, clock):
        tracker = CostTracker(providers=["openrouter", "vercel-gateway"], clock=clock)
        tracker.record_cost(create_cost_record(sonnet, TokenUsage(1000, 1000)), user_id="u-1")
        tracker.record_cost(create_cost_record(llama, TokenUsage(1000, 1000)))

        total = tracker.get_total_stats()
        assert total.total_requests == 2
        assert total.total_tokens == 4000
        assert total.total_cost_usd == pytest.approx(0.018 + 0.00042)

        gateway = tracker.get_provider_stats("vercel-gateway")
        assert gateway.total_requests == 1
        assert gateway.avg_cost_per_request == pytest.approx(0.018)

        assert tracker.get_model_stats(llama.id).total_requests == 1
        assert tracker.get_user_stats("u-1").total_cost_usd == pytest.approx(0.018)
        assert tracker.get_user_stats("anonymous") is None

    def test_total_requests_counts_every_record(self, sonnet, clock):
        tracker = CostTracker(clock=clock)
        for _ in range(7):
            tracker.record_cost(create_cost_record(sonnet, TokenUsage(10, 10)))
        assert tracker.get_total_stats().total_requests == 7

    def test_unknown_provider_is_empty(self, clock):
        tracker = CostTracker(clock=clock)
        stats = tracker.get_provider_stats("nowhere")
        assert stats.total_requests == 0
        assert stats.provider == "nowhere"

    def test_reset_starts_new_period(self, sonnet, clock):
        tracker = CostTracker(providers=["vercel-gateway"], clock=clock)
        tracker.record_cost(create_cost_record(sonnet, TokenUsage(10, 10)), user_id="u-1")
        clock.advance(60)
        tracker.reset_stats()

        total = tracker.get_total_stats()
        assert total.total_requests == 0
        assert total.period_start == clock.now
        assert tracker.get_user_stats("u-1") is None
        assert "vercel-gateway" in tracker.get_all_stats().by_provider

    def test_export_stats_is_json(self, sonnet, clock):
        tracker = CostTracker(clock=clock)
        tracker.record_cost(create_cost_record(sonnet, TokenUsage(1000, 0), timestamp=clock.now))
        exported = json.loads(tracker.export_stats())
        assert exported["total"]["total_requests"] == 1
        assert exported["by_provider"]["vercel-gateway"]["total_cost_usd"] == pytest.approx(0.003)


class TestFormatCost:
    """Test display formatting."""

    @pytest.mark.parametrize(
        "cost,expected",
        [(0.001234, "$0.001234"), (0.5, "$0.5000"), (12.5, "$12.50"), (0, "$0.000000")],
    )
    def test_format(self, cost, expected):
        assert format_cost_usd(cost) == expected
