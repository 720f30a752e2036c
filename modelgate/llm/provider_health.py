"""Provider health tracking.

One circuit breaker plus one metrics record per provider transport. Reading
health is also the recovery probe: an open circuit whose recovery timeout has
elapsed turns half-open when its status is read.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog

from modelgate.execution.circuit_breaker import (
    CIRCUIT_STATE_VALUES,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    percentile,
    to_iso,
)
from modelgate.observability import CIRCUIT_STATE

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Point-in-time health snapshot for one transport."""

    provider: str
    is_healthy: bool
    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: Optional[str]
    last_success_at: Optional[str]
    last_error: Optional[str]
    circuit_state: CircuitState
    circuit_opened_at: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "is_healthy": self.is_healthy,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_failure_at": self.last_failure_at,
            "last_success_at": self.last_success_at,
            "last_error": self.last_error,
            "circuit_state": self.circuit_state.value,
            "circuit_opened_at": self.circuit_opened_at,
        }


@dataclass
class ProviderMetrics:
    """Request and latency counters for one transport."""

    provider: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    fallback_requests: int = 0
    total_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    total_cost_usd: float = 0.0
    error_rate: float = 0.0
    last_updated: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "fallback_requests": self.fallback_requests,
            "total_latency_ms": self.total_latency_ms,
            "avg_latency_ms": self.avg_latency_ms,
            "p50_latency_ms": self.p50_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
            "p99_latency_ms": self.p99_latency_ms,
            "total_cost_usd": self.total_cost_usd,
            "error_rate": self.error_rate,
            "last_updated": to_iso(self.last_updated),
        }


def _error_message(error: BaseException | str | None) -> str:
    if error is None:
        return "unknown error"
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


class ProviderHealthService:
    """Circuit breaker and metrics per provider transport.

    Transports are created up front for ``providers`` and lazily for any other
    name the service is asked about.

    Example:
        health = ProviderHealthService(providers=["openrouter", "vercel-gateway"])
        health.record_failure("openrouter", TimeoutError("upstream timeout"))
        target = health.get_best_provider("openrouter", "vercel-gateway")
    """

    def __init__(
        self,
        providers: Iterable[str] = (),
        default_config: CircuitBreakerConfig | None = None,
        overrides: Mapping[str, Mapping[str, Any]] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._default_config = default_config or CircuitBreakerConfig(name="default")
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._metrics: dict[str, ProviderMetrics] = {}
        for provider in providers:
            self._ensure(provider)

    def _config_for(self, provider: str) -> CircuitBreakerConfig:
        return replace(self._default_config, name=provider).with_overrides(
            **self._overrides.get(provider, {})
        )

    def _ensure(self, provider: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(self._config_for(provider), clock=self._clock)
            self._breakers[provider] = breaker
            self._metrics[provider] = ProviderMetrics(provider=provider, last_updated=self._clock())
            self._publish_state(provider)
        return breaker

    def _publish_state(self, provider: str) -> None:
        CIRCUIT_STATE.labels(transport=provider).set(
            CIRCUIT_STATE_VALUES[self._breakers[provider].state]
        )

    @property
    def providers(self) -> list[str]:
        return list(self._breakers)

    def get_health_status(self, provider: str) -> HealthStatus:
        """Report health, moving an expired open circuit to half-open first."""
        breaker = self._ensure(provider)
        previous = breaker.state
        state = breaker.check_recovery()
        if state is not previous:
            self._publish_state(provider)

        return HealthStatus(
            provider=provider,
            is_healthy=breaker.is_available,
            consecutive_failures=breaker.consecutive_failures,
            consecutive_successes=breaker.consecutive_successes,
            last_failure_at=to_iso(breaker.last_failure_at),
            last_success_at=to_iso(breaker.last_success_at),
            last_error=breaker.last_error,
            circuit_state=state,
            circuit_opened_at=to_iso(breaker.circuit_opened_at),
        )

    def is_provider_healthy(self, provider: str) -> bool:
        return self.get_health_status(provider).is_healthy

    def record_success(
        self,
        provider: str,
        latency_ms: float,
        cost_usd: Optional[float] = None,
    ) -> None:
        """Record a successful request and refresh latency percentiles."""
        breaker = self._ensure(provider)
        metric = self._metrics[provider]

        previous = breaker.state
        breaker.record_success(latency_ms)

        metric.total_requests += 1
        metric.successful_requests += 1
        metric.total_latency_ms += latency_ms
        if cost_usd:
            metric.total_cost_usd += cost_usd
        metric.error_rate = metric.failed_requests / metric.total_requests
        metric.last_updated = self._clock()

        samples = breaker.sorted_latencies()
        metric.p50_latency_ms = percentile(samples, 50)
        metric.p95_latency_ms = percentile(samples, 95)
        metric.p99_latency_ms = percentile(samples, 99)
        metric.avg_latency_ms = round(metric.total_latency_ms / metric.successful_requests)

        if breaker.state is not previous:
            self._publish_state(provider)

    def record_failure(self, provider: str, error: BaseException | str | None) -> None:
        """Record a failed request against the transport's circuit."""
        breaker = self._ensure(provider)
        metric = self._metrics[provider]

        previous = breaker.state
        breaker.record_failure(_error_message(error))

        metric.total_requests += 1
        metric.failed_requests += 1
        metric.error_rate = metric.failed_requests / metric.total_requests
        metric.last_updated = self._clock()

        if breaker.state is not previous:
            self._publish_state(provider)

    def record_fallback(self, provider: str) -> None:
        """Count a request that had to be routed away from this transport."""
        self._ensure(provider)
        metric = self._metrics[provider]
        metric.fallback_requests += 1
        metric.last_updated = self._clock()

    def get_metrics(self, provider: str) -> ProviderMetrics:
        self._ensure(provider)
        return replace(self._metrics[provider])

    def get_all_metrics(self) -> dict[str, ProviderMetrics]:
        return {provider: replace(metric) for provider, metric in self._metrics.items()}

    def get_all_health(self) -> dict[str, HealthStatus]:
        return {provider: self.get_health_status(provider) for provider in list(self._breakers)}

    def reset_provider(self, provider: str) -> None:
        """Reset circuit state for a transport. Metrics are kept."""
        self._ensure(provider).reset()
        self._publish_state(provider)

    def force_open_circuit(self, provider: str) -> None:
        self._ensure(provider).force_open()
        self._publish_state(provider)

    def force_close_circuit(self, provider: str) -> None:
        self._ensure(provider).force_close()
        self._publish_state(provider)

    def get_best_provider(self, preferred: str, fallback: str) -> str:
        """Pick a transport, preferring ``preferred``.

        Falls back only when ``fallback`` is healthy. When neither is healthy
        the preferred transport is returned anyway.
        """
        if self.is_provider_healthy(preferred):
            return preferred

        if self.is_provider_healthy(fallback):
            logger.info(
                "Using fallback provider",
                preferred=preferred,
                fallback=fallback,
                preferred_state=self._breakers[preferred].state.value,
            )
            self.record_fallback(preferred)
            return fallback

        logger.warning(
            "All providers unhealthy, trying preferred",
            preferred=preferred,
            fallback=fallback,
        )
        return preferred
