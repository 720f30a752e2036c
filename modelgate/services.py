"""Service wiring.

``build_services`` constructs every stateful service once and hands them back
together; consumers receive the objects they need instead of reaching for
module-level instances.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import structlog

from modelgate.config_loader import ConfigLoader
from modelgate.execution.circuit_breaker import CircuitBreakerConfig
from modelgate.llm.cost_tracker import CostTracker
from modelgate.llm.model_registry import ModelRegistry, load_model_registry
from modelgate.llm.model_service import ModelService, TransportFactory
from modelgate.llm.provider_health import ProviderHealthService
from modelgate.rate_limiter import RateLimiter, RateLimiterConfig, RateLimitRule
from modelgate.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


@dataclass
class GatewayServices:
    """The process-wide service objects."""

    settings: Settings
    registry: ModelRegistry
    health: ProviderHealthService
    cost_tracker: CostTracker
    model_service: ModelService
    rate_limiter: RateLimiter

    async def aclose(self) -> None:
        await self.model_service.aclose()
        await self.rate_limiter.stop()


def _rate_limit_rules(section: Any) -> dict[str, RateLimitRule]:
    if not isinstance(section, Mapping):
        return {}
    rules = {}
    for bucket, rule in section.items():
        if not isinstance(rule, Mapping):
            continue
        rules[str(bucket)] = RateLimitRule(
            limit=int(rule.get("limit", 60)),
            window_seconds=float(rule.get("window_seconds", 60.0)),
        )
    return rules


def build_services(
    settings: Settings | None = None,
    loader: ConfigLoader | None = None,
    transport_factory: TransportFactory | None = None,
) -> GatewayServices:
    """Construct registry, health, cost tracking, model service and rate limiter.

    Args:
        settings: Settings to use; the cached global settings by default.
        loader: YAML config source; supplies catalog overrides plus the
            optional ``circuit_breakers`` (per transport) and ``rate_limits``
            (per bucket) sections.
        transport_factory: Replaces the registered transport factories,
            e.g. to run every model against a mock transport.
    """
    settings = settings or get_settings()
    loader = loader or ConfigLoader(explicit_path=settings.models_config_path)

    registry = load_model_registry(settings, loader)
    transports = registry.transports()

    circuit_overrides = loader.get("circuit_breakers", {})
    health = ProviderHealthService(
        providers=transports,
        default_config=CircuitBreakerConfig(
            name="default",
            failure_threshold=settings.circuit_failure_threshold,
            success_threshold=settings.circuit_success_threshold,
            recovery_timeout_seconds=settings.circuit_recovery_timeout_seconds,
            failure_window_seconds=settings.circuit_failure_window_seconds,
        ),
        overrides=circuit_overrides if isinstance(circuit_overrides, Mapping) else None,
    )
    cost_tracker = CostTracker(providers=transports)
    model_service = ModelService(
        registry,
        health,
        cost_tracker,
        settings,
        transport_factory=transport_factory,
    )
    rate_limiter = RateLimiter(
        RateLimiterConfig.from_settings(settings, _rate_limit_rules(loader.get("rate_limits")))
    )

    logger.debug(
        "Services constructed",
        transports=transports,
        primary_provider=settings.resolved_primary_provider,
    )
    return GatewayServices(
        settings=settings,
        registry=registry,
        health=health,
        cost_tracker=cost_tracker,
        model_service=model_service,
        rate_limiter=rate_limiter,
    )
