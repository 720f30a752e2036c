"""Centralized error handling and custom exceptions for modelgate.

Every failure caught around a provider call is normalized here, once, into one
of a small closed set of error kinds. Routing, retry and fallback logic only
ever branch on the attributes of the normalized error.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx


class ErrorCode(str, Enum):
    """Standardized error codes for callers and logs."""

    INTERNAL_ERROR = "internal_error"
    CONFIG_ERROR = "config_error"
    ROUTING_CONFIG_INVALID = "routing_config_invalid"
    UNKNOWN_MODEL = "unknown_model"

    # Provider errors
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_RATE_LIMIT = "provider_rate_limit"
    PROVIDER_REQUEST_REJECTED = "provider_request_rejected"

    # Outbound queue
    QUEUE_FULL = "queue_full"


class ErrorKind(str, Enum):
    """Closed set of failure kinds the routing layer reasons about."""

    CONFIG = "config"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

TRANSIENT_NETWORK_CODES = frozenset(
    {"etimedout", "econnreset", "econnrefused", "enotfound", "fetch_failed"}
)

_TRANSIENT_MESSAGE_HINTS = ("timeout", "timed out", "network", "fetch", "connection")
_RATE_LIMIT_MESSAGE_HINTS = ("rate limit", "too many requests", "quota exceeded")


class GatewayError(Exception):
    """Base exception for all modelgate errors."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error": True,
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(GatewayError):
    """A model cannot be used because its configuration is incomplete."""

    kind = ErrorKind.CONFIG

    def __init__(
        self,
        message: str,
        model_key: str | None = None,
        env_var: str | None = None,
        code: ErrorCode = ErrorCode.CONFIG_ERROR,
    ):
        super().__init__(
            message=message,
            code=code,
            details={"model_key": model_key, "env_var": env_var},
        )
        self.model_key = model_key
        self.env_var = env_var


class RoutingConfigError(ConfigError):
    """Routing tables reference unknown models or contain a fallback cycle."""

    def __init__(self, message: str, model_key: str | None = None):
        super().__init__(
            message=message,
            model_key=model_key,
            code=ErrorCode.ROUTING_CONFIG_INVALID,
        )


class UnknownModelError(GatewayError):
    """Model key not present in the registry."""

    def __init__(self, model_key: str):
        super().__init__(
            message=f"Unknown model: {model_key}",
            code=ErrorCode.UNKNOWN_MODEL,
            details={"model_key": model_key},
        )
        self.model_key = model_key


class ProviderError(GatewayError):
    """An upstream provider call failed."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        network_code: str | None = None,
        provider: str | None = None,
        model_key: str | None = None,
        rate_limited: bool = False,
        retry_after: float | None = None,
        code: ErrorCode = ErrorCode.PROVIDER_REQUEST_REJECTED,
    ):
        super().__init__(
            message=message,
            code=code,
            details={
                "status": status,
                "network_code": network_code,
                "provider": provider,
                "model_key": model_key,
                "retry_after": retry_after,
            },
        )
        self.status = status
        self.network_code = network_code
        self.provider = provider
        self.model_key = model_key
        self.rate_limited = rate_limited
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """Timeouts, 5xx, 429 and recognized network resets."""

    kind = ErrorKind.TRANSIENT


class PermanentRequestError(ProviderError):
    """The provider rejected the request; retrying will not help."""

    kind = ErrorKind.PERMANENT


class QueueFullError(GatewayError):
    """The outbound queue is at capacity."""

    def __init__(self, bucket: str, max_queue_size: int):
        super().__init__(
            message=f"Rate limiter queue is full ({max_queue_size} tasks), rejected '{bucket}'",
            code=ErrorCode.QUEUE_FULL,
            details={"bucket": bucket, "max_queue_size": max_queue_size},
        )
        self.bucket = bucket
        self.max_queue_size = max_queue_size


def _status_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _network_code_of(exc: BaseException) -> str | None:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return "etimedout"
    if isinstance(exc, (httpx.ConnectError, ConnectionRefusedError)):
        return "econnrefused"
    if isinstance(exc, (httpx.TransportError, ConnectionResetError)):
        return "econnreset"
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.lower() in TRANSIENT_NETWORK_CODES:
        return code.lower()
    return None


def _retry_after_of(exc: BaseException) -> float | None:
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    header = exc.response.headers.get("retry-after")
    if header is None:
        return None
    try:
        return float(header)
    except ValueError:
        return None


def classify_error(
    exc: BaseException,
    provider: str | None = None,
    model_key: str | None = None,
) -> GatewayError:
    """Normalize any caught failure into a GatewayError.

    Already-normalized errors are returned unchanged (with provider/model
    filled in when missing). Everything else becomes a TransientProviderError
    or a PermanentRequestError.

    Args:
        exc: The caught exception.
        provider: Transport the call went to, if any.
        model_key: Model key the call was made for, if any.

    Returns:
        The normalized error. The caller decides whether to raise it.
    """
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
            exc.details["provider"] = provider
        if exc.model_key is None:
            exc.model_key = model_key
            exc.details["model_key"] = model_key
        return exc
    if isinstance(exc, GatewayError):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    status = _status_of(exc)
    network_code = _network_code_of(exc)

    rate_limited = status == 429 or any(hint in lowered for hint in _RATE_LIMIT_MESSAGE_HINTS)
    transient = (
        rate_limited
        or (status is not None and status in RETRYABLE_STATUS_CODES)
        or network_code is not None
        or any(hint in lowered for hint in _TRANSIENT_MESSAGE_HINTS)
    )

    kwargs: dict[str, Any] = {
        "status": status,
        "network_code": network_code,
        "provider": provider,
        "model_key": model_key,
        "rate_limited": rate_limited,
        "retry_after": _retry_after_of(exc),
    }
    if transient:
        code = ErrorCode.PROVIDER_RATE_LIMIT if rate_limited else ErrorCode.PROVIDER_TRANSIENT
        return TransientProviderError(message, code=code, **kwargs)
    return PermanentRequestError(message, **kwargs)


def is_rate_limit_error(exc: BaseException) -> bool:
    """Whether a failure is an upstream rate-limit response."""
    normalized = classify_error(exc)
    return isinstance(normalized, ProviderError) and normalized.rate_limited
