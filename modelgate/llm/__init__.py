"""Model registry, provider health, cost tracking and model service."""

from modelgate.llm.cost_tracker import (
    CostAggregate,
    CostRecord,
    CostStats,
    CostTracker,
    TokenUsage,
    calculate_cost,
    compare_costs,
    create_cost_record,
    estimate_cost,
    extract_token_usage,
    format_cost_usd,
)
from modelgate.llm.model_registry import (
    CrossProviderFallback,
    ModelDefinition,
    ModelRegistry,
    RoutingTable,
    TransportKind,
    load_model_registry,
)
from modelgate.llm.model_service import (
    ChatFinish,
    ChatResult,
    ChatStream,
    ModelMetrics,
    ModelSelection,
    ModelService,
)
from modelgate.llm.provider_health import HealthStatus, ProviderHealthService, ProviderMetrics

__all__ = [
    # Model registry
    "CrossProviderFallback",
    "ModelDefinition",
    "ModelRegistry",
    "RoutingTable",
    "TransportKind",
    "load_model_registry",
    # Provider health
    "HealthStatus",
    "ProviderHealthService",
    "ProviderMetrics",
    # Cost tracking
    "CostAggregate",
    "CostRecord",
    "CostStats",
    "CostTracker",
    "TokenUsage",
    "calculate_cost",
    "compare_costs",
    "create_cost_record",
    "estimate_cost",
    "extract_token_usage",
    "format_cost_usd",
    # Model service
    "ChatFinish",
    "ChatResult",
    "ChatStream",
    "ModelMetrics",
    "ModelSelection",
    "ModelService",
]
