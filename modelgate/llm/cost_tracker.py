"""Token usage normalization, pricing and cost aggregation.

Providers report usage under different field names; ``extract_token_usage``
folds them into one ``TokenUsage``. Every completed call becomes a
``CostRecord`` which the ``CostTracker`` folds into per-provider, per-model,
per-user and total buckets. Raw records are not retained.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog

from modelgate.execution.circuit_breaker import to_iso
from modelgate.llm.model_registry import ModelDefinition

logger = structlog.get_logger(__name__)

_INPUT_FIELDS = ("promptTokens", "prompt_tokens", "inputTokens", "input_tokens")
_OUTPUT_FIELDS = ("completionTokens", "completion_tokens", "outputTokens", "output_tokens")
_TOTAL_FIELDS = ("totalTokens", "total_tokens")


@dataclass(frozen=True)
class TokenUsage:
    """Token counts normalized across providers."""

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


def _first_number(raw: Any, names: Iterable[str]) -> Optional[int]:
    for name in names:
        if isinstance(raw, Mapping):
            value = raw.get(name)
        else:
            value = getattr(raw, name, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
    return None


def extract_token_usage(raw: Any) -> Optional[TokenUsage]:
    """Extract normalized token counts from a usage payload.

    Accepts a mapping or an object with attributes. Returns None when no
    recognized field is present.
    """
    if raw is None or isinstance(raw, (str, bytes, int, float)):
        return None

    input_tokens = _first_number(raw, _INPUT_FIELDS)
    output_tokens = _first_number(raw, _OUTPUT_FIELDS)
    total_tokens = _first_number(raw, _TOTAL_FIELDS)
    if total_tokens is None:
        calculated = (input_tokens or 0) + (output_tokens or 0)
        total_tokens = calculated if calculated > 0 else None

    if input_tokens is None and output_tokens is None and total_tokens is None:
        return None
    return TokenUsage(input_tokens, output_tokens, total_tokens)


@dataclass(frozen=True)
class CostCalculation:
    """Priced token usage."""

    input_cost_usd: float
    output_cost_usd: float
    total_cost_usd: float
    input_tokens: int
    output_tokens: int
    total_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_cost_usd": self.input_cost_usd,
            "output_cost_usd": self.output_cost_usd,
            "total_cost_usd": self.total_cost_usd,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


def calculate_cost(model: ModelDefinition, usage: Optional[TokenUsage]) -> CostCalculation:
    """Price token usage with the model's per-1k rates.

    Example:
        calculate_cost(model, TokenUsage(input_tokens=1000, output_tokens=1000))
        # 0.003 + 0.015 = 0.018 for a model priced 0.003 / 0.015
    """
    input_tokens = (usage.input_tokens if usage else None) or 0
    output_tokens = (usage.output_tokens if usage else None) or 0
    total_tokens = usage.total_tokens if usage and usage.total_tokens is not None else None
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens

    input_cost = (input_tokens / 1000) * model.cost_per_1k_input_usd
    output_cost = (output_tokens / 1000) * model.cost_per_1k_output_usd
    return CostCalculation(
        input_cost_usd=input_cost,
        output_cost_usd=output_cost,
        total_cost_usd=input_cost + output_cost,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
    )


@dataclass(frozen=True)
class CostRecord:
    """Cost of one completed call."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost_usd: float
    output_cost_usd: float
    total_cost_usd: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "input_cost_usd": self.input_cost_usd,
            "output_cost_usd": self.output_cost_usd,
            "total_cost_usd": self.total_cost_usd,
            "timestamp": to_iso(self.timestamp),
        }


def create_cost_record(
    model: ModelDefinition,
    usage: Optional[TokenUsage],
    override_cost: Optional[float] = None,
    timestamp: Optional[float] = None,
) -> CostRecord:
    """Build a cost record; a provider-reported cost wins over the computed total."""
    calculation = calculate_cost(model, usage)
    return CostRecord(
        provider=model.transport,
        model=model.id,
        input_tokens=calculation.input_tokens,
        output_tokens=calculation.output_tokens,
        total_tokens=calculation.total_tokens,
        input_cost_usd=calculation.input_cost_usd,
        output_cost_usd=calculation.output_cost_usd,
        total_cost_usd=override_cost if override_cost is not None else calculation.total_cost_usd,
        timestamp=timestamp if timestamp is not None else time.time(),
    )


@dataclass
class CostStats:
    """One aggregation bucket."""

    provider: Optional[str] = None
    total_requests: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    avg_cost_per_request: float = 0.0
    period_start: float = field(default_factory=time.time)
    period_end: float = field(default_factory=time.time)

    def add(self, record: CostRecord) -> None:
        self.total_requests += 1
        self.total_tokens += record.total_tokens
        self.total_cost_usd += record.total_cost_usd
        self.avg_cost_per_request = self.total_cost_usd / self.total_requests
        self.period_end = record.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "total_requests": self.total_requests,
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "avg_cost_per_request": self.avg_cost_per_request,
            "period_start": to_iso(self.period_start),
            "period_end": to_iso(self.period_end),
        }


@dataclass
class CostAggregate:
    """All buckets at a point in time."""

    by_provider: dict[str, CostStats]
    by_model: dict[str, CostStats]
    by_user: dict[str, CostStats]
    total: CostStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "by_provider": {k: v.to_dict() for k, v in self.by_provider.items()},
            "by_model": {k: v.to_dict() for k, v in self.by_model.items()},
            "by_user": {k: v.to_dict() for k, v in self.by_user.items()},
            "total": self.total.to_dict(),
        }


class CostTracker:
    """Aggregates request costs by provider, model and user.

    Example:
        tracker = CostTracker(providers=["openrouter", "vercel-gateway"])
        tracker.record_cost(create_cost_record(model, usage), user_id="u-1")
        print(format_cost_usd(tracker.get_total_stats().total_cost_usd))
    """

    def __init__(
        self,
        providers: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._providers = list(providers)
        self.reset_stats(log=False)

    def _empty(self, provider: Optional[str], now: float) -> CostStats:
        return CostStats(provider=provider, period_start=now, period_end=now)

    def record_cost(self, record: CostRecord, user_id: Optional[str] = None) -> None:
        """Fold one cost record into every matching bucket."""
        now = self._clock()
        if record.provider not in self._by_provider:
            self._by_provider[record.provider] = self._empty(record.provider, now)
        self._by_provider[record.provider].add(record)

        if record.model not in self._by_model:
            self._by_model[record.model] = self._empty(record.provider, now)
        self._by_model[record.model].add(record)

        if user_id:
            if user_id not in self._by_user:
                self._by_user[user_id] = self._empty(record.provider, now)
            self._by_user[user_id].add(record)

        self._total.add(record)

        logger.info(
            "Request cost recorded",
            provider=record.provider,
            model=record.model,
            tokens=record.total_tokens,
            cost_usd=f"{record.total_cost_usd:.6f}",
            user_id=user_id or "anonymous",
        )

    def get_provider_stats(self, provider: str) -> CostStats:
        stats = self._by_provider.get(provider)
        if stats is None:
            now = self._clock()
            return self._empty(provider, now)
        return replace(stats)

    def get_model_stats(self, model_id: str) -> Optional[CostStats]:
        stats = self._by_model.get(model_id)
        return replace(stats) if stats else None

    def get_user_stats(self, user_id: str) -> Optional[CostStats]:
        stats = self._by_user.get(user_id)
        return replace(stats) if stats else None

    def get_total_stats(self) -> CostStats:
        return replace(self._total)

    def get_all_stats(self) -> CostAggregate:
        return CostAggregate(
            by_provider={k: replace(v) for k, v in self._by_provider.items()},
            by_model={k: replace(v) for k, v in self._by_model.items()},
            by_user={k: replace(v) for k, v in self._by_user.items()},
            total=replace(self._total),
        )

    def reset_stats(self, log: bool = True) -> None:
        """Reinitialize every bucket with a fresh period start."""
        now = self._clock()
        self._by_provider: dict[str, CostStats] = {
            provider: self._empty(provider, now) for provider in self._providers
        }
        self._by_model: dict[str, CostStats] = {}
        self._by_user: dict[str, CostStats] = {}
        self._total = self._empty(None, now)
        if log:
            logger.info("Cost stats reset", period_start=to_iso(now))

    def export_stats(self) -> str:
        """All buckets as indented JSON."""
        return json.dumps(self.get_all_stats().to_dict(), indent=2)


def format_cost_usd(cost_usd: float) -> str:
    """Format a cost for display, e.g. ``$0.001234``."""
    if cost_usd < 0.01:
        return f"${cost_usd:.6f}"
    if cost_usd < 1:
        return f"${cost_usd:.4f}"
    return f"${cost_usd:.2f}"


def estimate_cost(
    model: ModelDefinition,
    estimated_input_tokens: int,
    estimated_output_tokens: int,
) -> CostCalculation:
    """Price a request before making it."""
    return calculate_cost(
        model,
        TokenUsage(input_tokens=estimated_input_tokens, output_tokens=estimated_output_tokens),
    )


def compare_costs(
    model_a: ModelDefinition,
    model_b: ModelDefinition,
    input_tokens: int,
    output_tokens: int,
) -> dict[str, Any]:
    """Compare two models on the same token volume.

    Returns:
        Both calculations, the absolute and relative savings of the cheaper
        model, and the cheaper model's id (``model_a`` wins ties).
    """
    cost_a = estimate_cost(model_a, input_tokens, output_tokens)
    cost_b = estimate_cost(model_b, input_tokens, output_tokens)

    a_is_cheaper = cost_a.total_cost_usd <= cost_b.total_cost_usd
    cheaper_cost = min(cost_a.total_cost_usd, cost_b.total_cost_usd)
    expensive_cost = max(cost_a.total_cost_usd, cost_b.total_cost_usd)
    savings = expensive_cost - cheaper_cost

    return {
        "model_a": cost_a,
        "model_b": cost_b,
        "savings": savings,
        "savings_percent": (savings / expensive_cost) * 100 if expensive_cost > 0 else 0.0,
        "cheaper_model": model_a.id if a_is_cheaper else model_b.id,
    }
