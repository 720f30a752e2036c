"""Circuit breaker state machine for provider transports.

One breaker guards one transport. The breaker does not wrap calls itself:
callers report outcomes through ``record_success`` / ``record_failure`` and
read the state through ``check_recovery`` before routing. This keeps
unhealthy-provider handling a selection-time decision rather than an
exception raised on the call path.

States:
- CLOSED: Normal operation, requests flow through
- OPEN: Failure threshold reached, traffic is routed elsewhere
- HALF_OPEN: Recovery timeout elapsed, probing whether the provider recovered
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]

LATENCY_SAMPLE_CAP = 1000


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests allowed
    HALF_OPEN = "half-open"  # Testing if service has recovered
    OPEN = "open"  # Failure threshold reached, requests routed away


CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    name: str
    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 3  # Successes in half-open before closing
    recovery_timeout_seconds: float = 30.0  # Time open before half-open
    failure_window_seconds: float = 60.0  # Window for counting recent failures

    def with_overrides(self, **overrides: Any) -> CircuitBreakerConfig:
        """Copy of this config with the non-None overrides applied."""
        values = {
            "name": self.name,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "recovery_timeout_seconds": self.recovery_timeout_seconds,
            "failure_window_seconds": self.failure_window_seconds,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return CircuitBreakerConfig(**values)


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile over an ascending sequence.

    Index is ``ceil(p/100 * n) - 1`` clamped to the sequence bounds; an
    empty sequence yields 0.
    """
    if not sorted_values:
        return 0.0
    index = math.ceil((p / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, min(index, len(sorted_values) - 1))]


def to_iso(timestamp: Optional[float]) -> Optional[str]:
    """Epoch seconds to an ISO-8601 UTC string."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class CircuitBreaker:
    """Circuit breaker for one provider transport.

    Example:
        breaker = CircuitBreaker(CircuitBreakerConfig(name="openrouter"))

        if breaker.check_recovery() is not CircuitState.OPEN:
            try:
                result = await call()
                breaker.record_success(latency_ms)
            except Exception as e:
                breaker.record_failure(str(e))
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Clock = time.time):
        """Initialize circuit breaker.

        Args:
            config: Circuit breaker configuration
            clock: Returns the current time in epoch seconds
        """
        self.config = config
        self._clock = clock
        self._reset_state()

    def _reset_state(self) -> None:
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.last_failure_at: Optional[float] = None
        self.last_success_at: Optional[float] = None
        self.last_error: Optional[str] = None
        self.circuit_opened_at: Optional[float] = None
        self.failure_timestamps: list[float] = []
        self.latencies: deque[float] = deque(maxlen=LATENCY_SAMPLE_CAP)

    @property
    def is_available(self) -> bool:
        """Whether traffic may be routed to this transport."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def sorted_latencies(self) -> list[float]:
        """Ascending copy of the retained latency samples."""
        return sorted(self.latencies)

    def check_recovery(self) -> CircuitState:
        """Move OPEN to HALF_OPEN once the recovery timeout has elapsed.

        Returns the (possibly updated) state. Calling it again without new
        events leaves the state unchanged.
        """
        if self.state is CircuitState.OPEN and self.circuit_opened_at is not None:
            elapsed = self._clock() - self.circuit_opened_at
            if elapsed >= self.config.recovery_timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)
                logger.info(
                    "Circuit half-open, attempting recovery",
                    name=self.config.name,
                    open_seconds=round(elapsed, 3),
                )
        return self.state

    def record_success(self, latency_ms: float) -> None:
        """Record a successful call and its latency."""
        self.consecutive_successes += 1
        self.consecutive_failures = 0
        self.last_success_at = self._clock()
        self.latencies.append(latency_ms)

        if (
            self.state is CircuitState.HALF_OPEN
            and self.consecutive_successes >= self.config.success_threshold
        ):
            self._transition_to(CircuitState.CLOSED)
            self.circuit_opened_at = None
            logger.info(
                "Circuit closed, provider recovered",
                name=self.config.name,
                consecutive_successes=self.consecutive_successes,
            )

    def record_failure(self, error: str) -> None:
        """Record a failed call.

        Args:
            error: Description of the error
        """
        now = self._clock()
        self.consecutive_failures += 1
        self.consecutive_successes = 0
        self.last_failure_at = now
        self.last_error = error
        self.failure_timestamps.append(now)

        cutoff = now - self.config.failure_window_seconds
        self.failure_timestamps = [ts for ts in self.failure_timestamps if ts > cutoff]

        if self.state is CircuitState.CLOSED:
            if (
                self.consecutive_failures >= self.config.failure_threshold
                or len(self.failure_timestamps) >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)
                self.circuit_opened_at = now
                logger.warning(
                    "Circuit opened, provider unhealthy",
                    name=self.config.name,
                    consecutive_failures=self.consecutive_failures,
                    recent_failures=len(self.failure_timestamps),
                    last_error=error,
                )
        elif self.state is CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
            self.circuit_opened_at = now
            logger.warning(
                "Circuit re-opened, recovery failed",
                name=self.config.name,
                last_error=error,
            )

    def force_open(self) -> None:
        """Open the circuit regardless of recorded outcomes."""
        self._transition_to(CircuitState.OPEN)
        self.circuit_opened_at = self._clock()
        logger.warning("Circuit force-opened", name=self.config.name)

    def force_close(self) -> None:
        """Close the circuit and forget recent failures."""
        self._transition_to(CircuitState.CLOSED)
        self.circuit_opened_at = None
        self.consecutive_failures = 0
        self.failure_timestamps = []
        logger.info("Circuit force-closed", name=self.config.name)

    def reset(self) -> None:
        """Manually reset all breaker state to a fresh CLOSED circuit."""
        self._reset_state()
        logger.info("Circuit breaker manually reset", name=self.config.name)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self.state
        self.state = new_state
        if old_state is not new_state:
            logger.debug(
                "Circuit breaker state changed",
                name=self.config.name,
                old_state=old_state.value,
                new_state=new_state.value,
            )

    def to_dict(self) -> dict[str, Any]:
        """Snapshot of the breaker state (timestamps as ISO-8601)."""
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_failure_at": to_iso(self.last_failure_at),
            "last_success_at": to_iso(self.last_success_at),
            "last_error": self.last_error,
            "circuit_opened_at": to_iso(self.circuit_opened_at),
            "recent_failures": len(self.failure_timestamps),
        }
