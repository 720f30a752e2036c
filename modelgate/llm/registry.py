"""Transport factory registry.

Factories build a ``ChatTransport`` for one model definition. Construction is
synchronous and performs no network I/O; missing credentials surface here as
``ConfigError``.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from modelgate.exceptions import ConfigError
from modelgate.llm.mock import MockTransport
from modelgate.llm.model_registry import ModelDefinition, TransportKind
from modelgate.llm.transport import ChatTransport, OpenAICompatibleTransport, OpenRouterTransport

if TYPE_CHECKING:
    from modelgate.settings import Settings

logger = structlog.get_logger(__name__)

TransportFactory = Callable[[ModelDefinition, "Settings"], ChatTransport]

# Registry for transport factory functions, keyed by transport kind
TRANSPORT_REGISTRY: dict[str, TransportFactory] = {}


def register_transport(name: str, factory: TransportFactory) -> None:
    """Register a new transport factory."""
    TRANSPORT_REGISTRY[name] = factory


def get_transport_factory(name: str) -> TransportFactory:
    """Get the factory function for a transport kind."""
    if name not in TRANSPORT_REGISTRY:
        raise ConfigError(f"Unknown transport: {name}")
    return TRANSPORT_REGISTRY[name]


def build_transport(model: ModelDefinition, settings: Settings) -> ChatTransport:
    """Build the transport for a model via its registered factory."""
    factory = get_transport_factory(model.transport)
    try:
        return factory(model, settings)
    except ConfigError as e:
        if e.model_key is None:
            e.model_key = model.key
            e.details["model_key"] = model.key
        raise


def _require_api_key(model: ModelDefinition) -> str:
    if not model.api_key_env:
        raise ConfigError(
            f"No API key variable configured for {model.display_name}", model_key=model.key
        )
    api_key = os.environ.get(model.api_key_env)
    if not api_key:
        logger.error(
            "Model API key missing",
            model=model.key,
            transport=model.transport,
            api_key_env=model.api_key_env,
        )
        raise ConfigError(
            f"Missing API key for {model.display_name} (env: {model.api_key_env})",
            model_key=model.key,
            env_var=model.api_key_env,
        )
    return api_key


# ============================================================================
# Built-in Transport Factories
# ============================================================================


def create_openrouter_transport(model: ModelDefinition, settings: Settings) -> ChatTransport:
    """Factory for OpenRouter models."""
    return OpenRouterTransport(
        api_key=_require_api_key(model),
        base_url=model.base_url or settings.openrouter_base_url,
        app_url=settings.openrouter_app_url,
        app_name=settings.openrouter_app_name,
    )


def create_vercel_gateway_transport(model: ModelDefinition, settings: Settings) -> ChatTransport:
    """Factory for Vercel AI Gateway models."""
    api_key = _require_api_key(model)
    base_url = model.base_url or settings.vercel_gateway_base_url
    if not base_url:
        logger.error("Model base URL missing", model=model.key, transport=model.transport)
        raise ConfigError(f"Missing base URL for {model.display_name}", model_key=model.key)
    return OpenAICompatibleTransport(
        name=TransportKind.VERCEL_GATEWAY.value,
        api_key=api_key,
        base_url=base_url,
    )


def create_mock_transport(model: ModelDefinition, settings: Settings) -> ChatTransport:
    """Factory for Mock transport (testing and offline runs)."""
    return MockTransport(name=model.transport)


register_transport(TransportKind.OPENROUTER.value, create_openrouter_transport)
register_transport(TransportKind.VERCEL_GATEWAY.value, create_vercel_gateway_transport)
register_transport(TransportKind.MOCK.value, create_mock_transport)
