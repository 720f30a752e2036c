"""Static model registry.

Holds the immutable model definitions and routing tables (task map,
same-provider fallback graph, cross-provider equivalents, aliases). The
registry is built once at process start from the bundled catalog merged with
YAML overrides, validated, and read-only afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Optional

import structlog

from modelgate.config_loader import ConfigLoader, deep_merge
from modelgate.exceptions import ConfigError, RoutingConfigError, UnknownModelError
from modelgate.llm.catalog import default_catalog

if TYPE_CHECKING:
    from modelgate.settings import Settings

logger = structlog.get_logger(__name__)


class TransportKind(str, Enum):
    """Built-in upstream transport types."""

    OPENROUTER = "openrouter"
    VERCEL_GATEWAY = "vercel-gateway"
    MOCK = "mock"


@dataclass(frozen=True)
class ModelDefinition:
    """Everything needed to call and price one model."""

    key: str
    id: str
    transport: str
    display_name: str = ""
    provider: str = "openai-compatible"
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.4
    max_tokens: int = 2048
    timeout_seconds: float = 30.0
    cost_per_1k_input_usd: float = 0.0
    cost_per_1k_output_usd: float = 0.0
    context_window: int = 0
    supports_streaming: bool = True
    supports_vision: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "id": self.id,
            "display_name": self.display_name,
            "provider": self.provider,
            "transport": self.transport,
            "api_key_env": self.api_key_env,
            "base_url": self.base_url,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout_seconds": self.timeout_seconds,
            "cost_per_1k_input_usd": self.cost_per_1k_input_usd,
            "cost_per_1k_output_usd": self.cost_per_1k_output_usd,
            "context_window": self.context_window,
            "supports_streaming": self.supports_streaming,
            "supports_vision": self.supports_vision,
        }


@dataclass(frozen=True)
class CrossProviderFallback:
    """An equivalent model served by a different transport."""

    from_model: str
    to_model: str
    to_transport: str


@dataclass(frozen=True)
class RoutingTable:
    """Routing tables consulted by model selection."""

    default_model: str
    task_model_map: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    fallback_map: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    cross_provider_fallbacks: tuple[CrossProviderFallback, ...] = ()
    fast_model: Optional[str] = None
    reasoning_model: Optional[str] = None
    general_model: Optional[str] = None


def _parse_model(key: str, data: Mapping[str, Any]) -> ModelDefinition:
    if not isinstance(data, Mapping):
        raise ConfigError(f"Model '{key}' must be a mapping", model_key=key)
    for required in ("id", "transport"):
        if not data.get(required):
            raise ConfigError(f"Model '{key}' is missing '{required}'", model_key=key)

    try:
        return ModelDefinition(
            key=key,
            id=str(data["id"]),
            transport=str(data["transport"]),
            display_name=str(data.get("display_name") or key),
            provider=str(data.get("provider", "openai-compatible")),
            api_key_env=data.get("api_key_env"),
            base_url=data.get("base_url"),
            temperature=float(data.get("temperature", 0.4)),
            max_tokens=int(data.get("max_tokens", 2048)),
            timeout_seconds=float(data.get("timeout_seconds", 30.0)),
            cost_per_1k_input_usd=float(data.get("cost_per_1k_input_usd", 0.0)),
            cost_per_1k_output_usd=float(data.get("cost_per_1k_output_usd", 0.0)),
            context_window=int(data.get("context_window", 0)),
            supports_streaming=bool(data.get("supports_streaming", True)),
            supports_vision=bool(data.get("supports_vision", False)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Model '{key}' has an invalid field: {e}", model_key=key) from e


def _parse_routing(data: Mapping[str, Any]) -> RoutingTable:
    default_model = data.get("default_model")
    if not default_model:
        raise RoutingConfigError("Routing table has no default_model")

    cross = []
    for entry in data.get("cross_provider_fallbacks") or []:
        try:
            cross.append(
                CrossProviderFallback(
                    from_model=str(entry["from"]),
                    to_model=str(entry["to"]),
                    to_transport=str(entry["transport"]),
                )
            )
        except (KeyError, TypeError) as e:
            raise RoutingConfigError(f"Invalid cross-provider fallback entry: {entry!r}") from e

    return RoutingTable(
        default_model=str(default_model),
        task_model_map=MappingProxyType(
            {str(k).strip().lower(): str(v) for k, v in (data.get("task_model_map") or {}).items()}
        ),
        fallback_map=MappingProxyType(
            {str(k): str(v) for k, v in (data.get("fallback_map") or {}).items() if v}
        ),
        cross_provider_fallbacks=tuple(cross),
        fast_model=data.get("fast_model"),
        reasoning_model=data.get("reasoning_model"),
        general_model=data.get("general_model"),
    )


class ModelRegistry:
    """Immutable registry of model definitions and routing tables.

    Example:
        registry = load_model_registry(get_settings())

        model = registry.get("openrouter-llama")
        chain_head = registry.next_fallback("openrouter-opus")
        equivalent = registry.cross_provider_equivalent("sonnet")
    """

    def __init__(
        self,
        models: Mapping[str, ModelDefinition],
        routing: RoutingTable,
        aliases: Mapping[str, str] | None = None,
    ):
        self._models = MappingProxyType(dict(models))
        self._aliases = MappingProxyType(
            {str(k).strip().lower(): str(v) for k, v in (aliases or {}).items()}
        )
        self._routing = self._resolve_routing_aliases(routing)
        self._cross = {fb.from_model: fb for fb in self._routing.cross_provider_fallbacks}
        self._validate()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModelRegistry:
        """Build a registry from the catalog/YAML dictionary shape."""
        raw_models = data.get("models") or {}
        if not raw_models:
            raise ConfigError("Model catalog is empty")
        models = {
            str(key): _parse_model(str(key), definition) for key, definition in raw_models.items()
        }
        routing = _parse_routing(data.get("routing") or {})
        return cls(models, routing, data.get("aliases") or {})

    @property
    def models(self) -> Mapping[str, ModelDefinition]:
        return self._models

    @property
    def routing(self) -> RoutingTable:
        return self._routing

    @property
    def aliases(self) -> Mapping[str, str]:
        return self._aliases

    def keys(self) -> list[str]:
        return list(self._models)

    def has(self, key: str) -> bool:
        return key in self._models

    def get(self, key: str) -> ModelDefinition:
        """Look up a model definition by key.

        Raises:
            UnknownModelError: If the key is not registered.
        """
        try:
            return self._models[key]
        except KeyError:
            raise UnknownModelError(key) from None

    def resolve(self, name: str | None) -> Optional[str]:
        """Resolve a model key or alias to a registered model key."""
        if not name:
            return None
        candidate = name.strip()
        if candidate in self._models:
            return candidate
        return self._aliases.get(candidate.lower())

    def transport_of(self, key: str) -> str:
        return self.get(key).transport

    def transports(self) -> list[str]:
        """Distinct transports in catalog order."""
        return list(dict.fromkeys(model.transport for model in self._models.values()))

    def models_by_transport(self, transport: str) -> list[str]:
        return [key for key, model in self._models.items() if model.transport == transport]

    def next_fallback(self, key: str) -> Optional[str]:
        """Next hop in the same-provider fallback graph."""
        return self._routing.fallback_map.get(key)

    def cross_provider_equivalent(self, key: str) -> Optional[CrossProviderFallback]:
        return self._cross.get(key)

    def _resolve_routing_aliases(self, routing: RoutingTable) -> RoutingTable:
        """Rewrite alias names in the selection targets to model keys."""

        def canonical(name: Optional[str]) -> Optional[str]:
            if name is None or name in self._models:
                return name
            return self._aliases.get(name.strip().lower(), name)

        return replace(
            routing,
            default_model=canonical(routing.default_model),
            fast_model=canonical(routing.fast_model),
            reasoning_model=canonical(routing.reasoning_model),
            general_model=canonical(routing.general_model),
            task_model_map=MappingProxyType(
                {task: canonical(key) for task, key in routing.task_model_map.items()}
            ),
        )

    def _validate(self) -> None:
        routing = self._routing

        def require(model_key: Optional[str], where: str) -> None:
            if model_key is not None and model_key not in self._models:
                raise RoutingConfigError(
                    f"{where} references unknown model '{model_key}'", model_key=model_key
                )

        require(routing.default_model, "default_model")
        require(routing.fast_model, "fast_model")
        require(routing.reasoning_model, "reasoning_model")
        require(routing.general_model, "general_model")
        for task, model_key in routing.task_model_map.items():
            require(model_key, f"task_model_map[{task}]")
        for source, target in routing.fallback_map.items():
            require(source, "fallback_map")
            require(target, f"fallback_map[{source}]")
        for alias, target in self._aliases.items():
            require(target, f"aliases[{alias}]")
        for fb in routing.cross_provider_fallbacks:
            require(fb.from_model, "cross_provider_fallbacks")
            require(fb.to_model, f"cross_provider_fallbacks[{fb.from_model}]")
            actual = self._models[fb.to_model].transport
            if actual != fb.to_transport:
                raise RoutingConfigError(
                    f"Cross-provider fallback {fb.from_model} -> {fb.to_model} names transport "
                    f"'{fb.to_transport}' but the model uses '{actual}'",
                    model_key=fb.from_model,
                )

        # Out-degree is at most one, so a walk revisiting a node is a cycle.
        for start in routing.fallback_map:
            seen = {start}
            node = routing.fallback_map.get(start)
            while node is not None:
                if node in seen:
                    raise RoutingConfigError(
                        f"fallback_map contains a cycle through '{node}'", model_key=start
                    )
                seen.add(node)
                node = routing.fallback_map.get(node)


def load_model_registry(
    settings: Settings,
    loader: ConfigLoader | None = None,
) -> ModelRegistry:
    """Build the registry from the bundled catalog plus YAML overrides.

    Args:
        settings: Resolved settings (base URLs, default model, Groq override).
        loader: Config loader; one honoring ``settings.models_config_path`` is
            created when omitted.

    Raises:
        ConfigError: A model definition is malformed.
        RoutingConfigError: Routing tables reference unknown models, name the
            wrong transport, or contain a fallback cycle.
    """
    loader = loader or ConfigLoader(explicit_path=settings.models_config_path)
    catalog = deep_merge(default_catalog(settings), loader.catalog_overrides())
    registry = ModelRegistry.from_dict(catalog)
    logger.info(
        "Model registry loaded",
        models=len(registry.models),
        transports=registry.transports(),
        default_model=registry.routing.default_model,
    )
    return registry
