"""Bundled model catalog.

The catalog is plain data in the same shape as the ``models`` / ``routing`` /
``aliases`` sections of a YAML config file, so file overrides can be deep
merged over it before the registry parses it.
"""

from __future__ import annotations

from typing import Any

from modelgate.settings import Settings

OPENROUTER_KEY_ENV = "OPENROUTER_API_KEY"
VERCEL_GATEWAY_KEY_ENV = "VERCEL_AI_GATEWAY_API_KEY"

FALLBACK_DEFAULT_MODEL = "openrouter-llama"

MODEL_ALIASES: dict[str, str] = {
    "sonnet": "sonnet",
    "claude-sonnet": "sonnet",
    "sonnet-4.5": "sonnet",
    "opus": "sonnet",
    "grok": "grok",
    "grok-4.1": "grok",
    "general": "grok",
    "groq": "groq",
    "llama-3.3-70b": "groq",
    "haiku": "groq",
    "tech": "groq",
    "openrouter-sonnet": "openrouter-sonnet",
    "openrouter-claude": "openrouter-sonnet",
    "openrouter-opus": "openrouter-opus",
    "openrouter-llama": "openrouter-llama",
    "llama-70b": "openrouter-llama",
    "openrouter-grok": "openrouter-grok",
    "grok-openrouter": "openrouter-grok",
}


def _gateway_model(settings: Settings, **fields: Any) -> dict[str, Any]:
    return {
        "provider": "openai-compatible",
        "transport": "vercel-gateway",
        "api_key_env": VERCEL_GATEWAY_KEY_ENV,
        "base_url": settings.vercel_gateway_base_url,
        "supports_streaming": True,
        **fields,
    }


def _openrouter_model(settings: Settings, **fields: Any) -> dict[str, Any]:
    return {
        "provider": "openai-compatible",
        "transport": "openrouter",
        "api_key_env": OPENROUTER_KEY_ENV,
        "base_url": settings.openrouter_base_url,
        "supports_streaming": True,
        **fields,
    }


def default_catalog(settings: Settings) -> dict[str, Any]:
    """Return the bundled catalog resolved against the current settings."""
    models = {
        "sonnet": _gateway_model(
            settings,
            id="anthropic/claude-sonnet-4.5",
            display_name="Claude Sonnet 4.5",
            temperature=0.4,
            max_tokens=4096,
            timeout_seconds=45.0,
            cost_per_1k_input_usd=0.003,
            cost_per_1k_output_usd=0.015,
            context_window=200_000,
            supports_vision=True,
        ),
        "grok": _gateway_model(
            settings,
            id="xai/grok-4.1",
            display_name="Grok 4.1",
            temperature=0.4,
            max_tokens=2048,
            timeout_seconds=30.0,
            cost_per_1k_input_usd=0.003,
            cost_per_1k_output_usd=0.015,
            context_window=128_000,
            supports_vision=False,
        ),
        "groq": _gateway_model(
            settings,
            id=settings.groq_technical_model,
            display_name="Llama 3.3 70B (Groq)",
            temperature=0.25,
            max_tokens=2048,
            timeout_seconds=20.0,
            cost_per_1k_input_usd=0.00059,
            cost_per_1k_output_usd=0.00079,
            context_window=128_000,
            supports_vision=False,
        ),
        "openrouter-sonnet": _openrouter_model(
            settings,
            id="anthropic/claude-sonnet-4",
            display_name="Claude Sonnet (OpenRouter)",
            temperature=0.4,
            max_tokens=4096,
            timeout_seconds=60.0,
            cost_per_1k_input_usd=0.003,
            cost_per_1k_output_usd=0.015,
            context_window=200_000,
            supports_vision=True,
        ),
        "openrouter-llama": _openrouter_model(
            settings,
            id="meta-llama/llama-3.3-70b-instruct",
            display_name="Llama 3.3 70B (OpenRouter)",
            temperature=0.25,
            max_tokens=2048,
            timeout_seconds=30.0,
            cost_per_1k_input_usd=0.00012,
            cost_per_1k_output_usd=0.0003,
            context_window=128_000,
            supports_vision=False,
        ),
        "openrouter-grok": _openrouter_model(
            settings,
            id="x-ai/grok-4",
            display_name="Grok (OpenRouter)",
            temperature=0.3,
            max_tokens=4096,
            timeout_seconds=45.0,
            cost_per_1k_input_usd=0.003,
            cost_per_1k_output_usd=0.015,
            context_window=128_000,
            supports_vision=False,
        ),
        "openrouter-opus": _openrouter_model(
            settings,
            id="anthropic/claude-opus-4",
            display_name="Claude Opus (OpenRouter)",
            temperature=0.4,
            max_tokens=8192,
            timeout_seconds=90.0,
            cost_per_1k_input_usd=0.015,
            cost_per_1k_output_usd=0.075,
            context_window=200_000,
            supports_vision=True,
        ),
    }

    routing = {
        "default_model": settings.default_model or FALLBACK_DEFAULT_MODEL,
        "task_model_map": {
            "analysis": "openrouter-llama",
            "technical": "openrouter-llama",
            "quick-pulse": "openrouter-llama",
            "quickpulse": "openrouter-llama",
            "chat": "openrouter-llama",
            "general": "openrouter-llama",
            "research": "openrouter-opus",
            "reasoning": "openrouter-opus",
            "news": "openrouter-grok",
            "sentiment": "openrouter-grok",
        },
        # Same-provider chains; must stay acyclic.
        "fallback_map": {
            "sonnet": "grok",
            "grok": "groq",
            "openrouter-opus": "openrouter-sonnet",
            "openrouter-sonnet": "openrouter-grok",
            "openrouter-grok": "openrouter-llama",
        },
        "cross_provider_fallbacks": [
            {"from": "sonnet", "to": "openrouter-sonnet", "transport": "openrouter"},
            {"from": "grok", "to": "openrouter-grok", "transport": "openrouter"},
            {"from": "groq", "to": "openrouter-llama", "transport": "openrouter"},
            {"from": "openrouter-sonnet", "to": "sonnet", "transport": "vercel-gateway"},
            {"from": "openrouter-grok", "to": "grok", "transport": "vercel-gateway"},
            {"from": "openrouter-llama", "to": "groq", "transport": "vercel-gateway"},
            {"from": "openrouter-opus", "to": "sonnet", "transport": "vercel-gateway"},
        ],
        "fast_model": "groq",
        "reasoning_model": "sonnet",
        "general_model": "grok",
    }

    return {"models": models, "routing": routing, "aliases": dict(MODEL_ALIASES)}
