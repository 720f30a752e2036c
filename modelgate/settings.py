"""Application settings."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables and `.env`.

    Provider credentials are not settings: each model definition names the
    environment variable holding its key, and that variable is read when the
    model's transport is first built.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Logging
    log_level: str = Field(default="info", alias="MODELGATE_LOG_LEVEL")
    debug: bool = Field(default=False, alias="MODELGATE_DEBUG")

    # Model catalog
    models_config_path: Optional[Path] = Field(default=None, alias="MODELGATE_MODELS_CONFIG")
    default_model: Optional[str] = Field(default=None, alias="AI_DEFAULT_MODEL")
    enable_provider_fallback: bool = Field(default=True, alias="AI_ENABLE_PROVIDER_FALLBACK")
    primary_provider: Optional[Literal["openrouter", "vercel-gateway"]] = Field(
        default=None, alias="AI_PRIMARY_PROVIDER"
    )
    slow_response_ms: int = Field(default=3000, alias="AI_SLOW_RESPONSE_MS")

    # Provider transports
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_BASE_URL"
    )
    openrouter_app_url: str = Field(
        default="https://pulse-solvys.vercel.app", alias="OPENROUTER_APP_URL"
    )
    openrouter_app_name: str = Field(default="Pulse-AI-Gateway", alias="OPENROUTER_APP_NAME")
    vercel_gateway_base_url: str = Field(
        default="https://ai-gateway.vercel.sh/v1/chat/completions",
        alias="VERCEL_AI_GATEWAY_BASE_URL",
    )
    groq_technical_model: str = Field(
        default="groq/llama-3.3-70b-versatile", alias="GROQ_TECHNICAL_MODEL"
    )

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, alias="MODELGATE_CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_timeout_seconds: float = Field(
        default=30.0, alias="MODELGATE_CIRCUIT_RECOVERY_TIMEOUT_SECONDS"
    )
    circuit_success_threshold: int = Field(default=3, alias="MODELGATE_CIRCUIT_SUCCESS_THRESHOLD")
    circuit_failure_window_seconds: float = Field(
        default=60.0, alias="MODELGATE_CIRCUIT_FAILURE_WINDOW_SECONDS"
    )

    # Outbound rate limiter
    rate_limit_calls: int = Field(default=60, alias="MODELGATE_RATE_LIMIT_CALLS")
    rate_limit_window_seconds: float = Field(
        default=60.0, alias="MODELGATE_RATE_LIMIT_WINDOW_SECONDS"
    )
    rate_limit_base_backoff_seconds: float = Field(
        default=1.0, alias="MODELGATE_RATE_LIMIT_BASE_BACKOFF_SECONDS"
    )
    rate_limit_max_backoff_seconds: float = Field(
        default=30.0, alias="MODELGATE_RATE_LIMIT_MAX_BACKOFF_SECONDS"
    )
    rate_limit_jitter_seconds: float = Field(default=0.25, alias="MODELGATE_RATE_LIMIT_JITTER_SECONDS")
    rate_limit_max_retries: int = Field(default=3, alias="MODELGATE_RATE_LIMIT_MAX_RETRIES")
    rate_limit_max_queue_size: int = Field(default=100, alias="MODELGATE_RATE_LIMIT_MAX_QUEUE_SIZE")

    # Observability
    metrics_enabled: bool = Field(default=False, alias="MODELGATE_METRICS_ENABLED")
    metrics_port: int = Field(default=9090, alias="MODELGATE_METRICS_PORT")
    tracing_enabled: bool = Field(default=False, alias="MODELGATE_TRACING_ENABLED")

    @property
    def resolved_primary_provider(self) -> str:
        """Primary transport: explicit setting, else OpenRouter when its key is present."""
        if self.primary_provider:
            return self.primary_provider
        return "openrouter" if os.environ.get("OPENROUTER_API_KEY") else "vercel-gateway"

    @field_validator("metrics_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port number is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator(
        "circuit_failure_threshold",
        "circuit_success_threshold",
        "rate_limit_calls",
        "rate_limit_max_queue_size",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    @field_validator(
        "circuit_recovery_timeout_seconds",
        "circuit_failure_window_seconds",
        "rate_limit_window_seconds",
        "rate_limit_max_backoff_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("rate_limit_max_retries", "slow_response_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must not be negative, got {v}")
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance.

    YAML config files are applied first (global, then project), and any
    environment variable already set wins over them.
    """
    global _settings
    if _settings is None:
        from modelgate.config_loader import ConfigLoader

        loader = ConfigLoader()
        for key, value in loader.to_env_vars().items():
            if key not in os.environ:
                os.environ[key] = value

        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings instance. Used by tests."""
    global _settings
    _settings = None
