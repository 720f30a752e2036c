"""Unit tests for the rate-limited HTTP client."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from modelgate.exceptions import PermanentRequestError
from modelgate.http_client import QuotaHttpClient
from modelgate.rate_limiter import RateLimiter, RateLimiterConfig, RateLimitRule


class InstantSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def sleeper() -> InstantSleep:
    return InstantSleep()


@pytest.fixture
def limiter(sleeper) -> RateLimiter:
    return RateLimiter(
        RateLimiterConfig(
            rules={"x-api": RateLimitRule(limit=15, window_seconds=900)},
            base_backoff_seconds=1.0,
            jitter_seconds=0.0,
            max_retries=3,
        ),
        sleep=sleeper,
    )


def make_client(limiter: RateLimiter, handler) -> QuotaHttpClient:
    return QuotaHttpClient(
        limiter,
        bucket="x-api",
        client=httpx.AsyncClient(
            base_url="https://api.example.test/2", transport=httpx.MockTransport(handler)
        ),
    )


class TestQuotaHttpClient:
    """Test requests routed through the limiter."""

    async def test_get_json(self, limiter):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [1, 2]})

        client = make_client(limiter, handler)
        result = await client.get_json("/users/1/tweets", params={"max_results": 10})

        assert result == {"data": [1, 2]}
        assert seen[0].url.path == "/2/users/1/tweets"
        assert seen[0].url.params["max_results"] == "10"
        await limiter.stop()

    async def test_post_json_with_empty_body(self, limiter):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(204)

        client = make_client(limiter, handler)
        assert await client.post_json("/events", json={"a": 1}) is None
        await limiter.stop()

    async def test_rate_limited_response_is_retried(self, limiter, sleeper):
        responses = [httpx.Response(429), httpx.Response(429), httpx.Response(200, json={"ok": True})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        client = make_client(limiter, handler)
        assert await client.get_json("/status") == {"ok": True}
        assert sleeper.calls == [1.0, 2.0]
        await limiter.stop()

    async def test_client_error_reaches_caller(self, limiter, sleeper):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"title": "Not Found"})

        client = make_client(limiter, handler)
        with pytest.raises(PermanentRequestError) as exc_info:
            await client.get_json("/missing")

        assert exc_info.value.status == 404
        assert exc_info.value.provider == "x-api"
        assert sleeper.calls == []
        await limiter.stop()

    async def test_aclose_leaves_injected_client(self, limiter):
        inner = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = QuotaHttpClient(limiter, bucket="x-api", client=inner)
        await client.aclose()
        assert inner.is_closed is False
        await inner.aclose()
