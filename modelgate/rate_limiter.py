"""Outbound rate limiting for quota-bound upstream APIs.

A single FIFO queue is drained by one sequential worker. Each task belongs to
a bucket with a fixed-window quota; when the head task's bucket has no free
slot, the task goes back to the head of the queue and the worker sleeps until
the window resets. Every task waits behind the head, whatever its bucket.

Rate-limit responses (HTTP 429 and friends) are retried with exponential
backoff plus symmetric jitter; every other failure goes straight back to the
caller.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional, TypeVar

import structlog

from modelgate.exceptions import QueueFullError, is_rate_limit_error
from modelgate.observability import RATE_LIMIT_QUEUE_DEPTH

if TYPE_CHECKING:
    from modelgate.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_BUCKET = "default"


@dataclass(frozen=True)
class RateLimitRule:
    """Quota for one bucket: at most ``limit`` calls per window."""

    limit: int = 60
    window_seconds: float = 60.0


@dataclass
class RateLimiterConfig:
    """Configuration for the outbound rate limiter."""

    default_rule: RateLimitRule = field(default_factory=RateLimitRule)
    rules: dict[str, RateLimitRule] = field(default_factory=dict)
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    jitter_seconds: float = 0.25
    max_retries: int = 3
    max_queue_size: int = 100

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rules: Mapping[str, RateLimitRule] | None = None,
    ) -> RateLimiterConfig:
        return cls(
            default_rule=RateLimitRule(
                limit=settings.rate_limit_calls,
                window_seconds=settings.rate_limit_window_seconds,
            ),
            rules=dict(rules or {}),
            base_backoff_seconds=settings.rate_limit_base_backoff_seconds,
            max_backoff_seconds=settings.rate_limit_max_backoff_seconds,
            jitter_seconds=settings.rate_limit_jitter_seconds,
            max_retries=settings.rate_limit_max_retries,
            max_queue_size=settings.rate_limit_max_queue_size,
        )


@dataclass
class QueuedTask:
    """Work waiting for a slot."""

    work: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    bucket: str = DEFAULT_BUCKET
    attempt: int = 0


@dataclass
class _Window:
    started_at: float
    used: int = 0


class RateLimiter:
    """FIFO gate enforcing per-bucket call quotas.

    Example:
        limiter = RateLimiter(RateLimiterConfig(rules={"x-api": RateLimitRule(15, 900)}))

        data = await limiter.schedule(lambda: client.get(url), bucket="x-api")
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """Initialize rate limiter.

        Args:
            config: Rate limiting configuration
            clock: Monotonic time source in seconds
            sleep: Coroutine used for every wait
            rng: Source of backoff jitter
        """
        self.config = config or RateLimiterConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._queue: deque[QueuedTask] = deque()
        self._windows: dict[str, _Window] = {}
        self._worker: asyncio.Task | None = None

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def rule_for(self, bucket: str) -> RateLimitRule:
        return self.config.rules.get(bucket, self.config.default_rule)

    def acquire_slot(self, bucket: str = DEFAULT_BUCKET) -> float:
        """Take a slot in the bucket's current window.

        Returns:
            0.0 if a slot was consumed, otherwise the seconds until the
            window resets.
        """
        rule = self.rule_for(bucket)
        now = self._clock()

        window = self._windows.get(bucket)
        if window is None or now - window.started_at >= rule.window_seconds:
            window = _Window(started_at=now)
            self._windows[bucket] = window

        if window.used < rule.limit:
            window.used += 1
            return 0.0
        return max(0.0, rule.window_seconds - (now - window.started_at))

    def compute_backoff(self, attempt: int) -> float:
        """Exponential backoff with symmetric jitter, never negative."""
        delay = min(
            self.config.base_backoff_seconds * (2**attempt),
            self.config.max_backoff_seconds,
        )
        jitter = self._rng.uniform(-self.config.jitter_seconds, self.config.jitter_seconds)
        return max(0.0, delay + jitter)

    async def schedule(
        self,
        work: Callable[[], Awaitable[T]],
        bucket: str = DEFAULT_BUCKET,
    ) -> T:
        """Queue ``work`` and wait for its result.

        Args:
            work: Zero-argument callable returning an awaitable; called once
                per attempt.
            bucket: Quota partition the call counts against.

        Raises:
            QueueFullError: The queue already holds ``max_queue_size`` tasks.
                Nothing is enqueued.
        """
        if len(self._queue) >= self.config.max_queue_size:
            logger.warning(
                "Rate limiter queue full",
                bucket=bucket,
                max_queue_size=self.config.max_queue_size,
            )
            raise QueueFullError(bucket, self.config.max_queue_size)

        future = asyncio.get_running_loop().create_future()
        self._queue.append(QueuedTask(work=work, future=future, bucket=bucket))
        self._publish_depth()
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    def _publish_depth(self) -> None:
        RATE_LIMIT_QUEUE_DEPTH.set(len(self._queue))

    async def _drain(self) -> None:
        while self._queue:
            task = self._queue.popleft()
            self._publish_depth()
            if task.future.done():
                # Caller gave up while waiting.
                continue

            wait = self.acquire_slot(task.bucket)
            if wait > 0:
                self._queue.appendleft(task)
                self._publish_depth()
                logger.debug("Rate limit window full, waiting", bucket=task.bucket, wait_seconds=wait)
                await self._sleep(wait)
                continue

            try:
                result = await task.work()
            except asyncio.CancelledError:
                task.future.cancel()
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                # The work cancelled itself; the worker keeps draining.
                logger.warning("Scheduled work was cancelled", bucket=task.bucket)
            except Exception as exc:
                if is_rate_limit_error(exc) and task.attempt < self.config.max_retries:
                    delay = self.compute_backoff(task.attempt)
                    logger.warning(
                        "Rate limited upstream, backing off",
                        bucket=task.bucket,
                        attempt=task.attempt + 1,
                        max_retries=self.config.max_retries,
                        delay=round(delay, 3),
                    )
                    await self._sleep(delay)
                    task.attempt += 1
                    self._queue.appendleft(task)
                    self._publish_depth()
                elif not task.future.done():
                    task.future.set_exception(exc)
            else:
                if not task.future.done():
                    task.future.set_result(result)

    async def stop(self) -> None:
        """Stop the worker and cancel every queued caller."""
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.cancel()
        self._publish_depth()
