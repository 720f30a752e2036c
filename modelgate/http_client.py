"""HTTP client for quota-bound third-party APIs.

Every request goes through the shared ``RateLimiter`` under the client's
bucket. Upstream failures are raised as classified ``ProviderError``s, so a
429 is retried by the limiter's backoff and anything else reaches the caller.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx
import structlog

from modelgate.exceptions import classify_error
from modelgate.rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)


class QuotaHttpClient:
    """JSON over HTTP, gated by a rate limiter bucket.

    Example:
        client = QuotaHttpClient(
            limiter,
            bucket="x-api",
            base_url="https://api.x.com/2",
            headers={"Authorization": f"Bearer {token}"},
        )
        tweets = await client.get_json("/users/123/tweets", params={"max_results": 10})
    """

    def __init__(
        self,
        limiter: RateLimiter,
        bucket: str,
        base_url: str = "",
        headers: Mapping[str, str] | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.limiter = limiter
        self.bucket = bucket
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=timeout_seconds,
        )

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        """Send one request through the limiter and decode the JSON body."""

        async def call() -> Any:
            try:
                response = await self._client.request(method, url, params=params, json=json)
                response.raise_for_status()
            except (httpx.HTTPStatusError, httpx.TransportError) as e:
                raise classify_error(e, provider=self.bucket) from e

            if not response.content:
                return None
            return response.json()

        return await self.limiter.schedule(call, bucket=self.bucket)

    async def get_json(self, url: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.request_json("GET", url, params=params)

    async def post_json(self, url: str, json: Any = None) -> Any:
        return await self.request_json("POST", url, json=json)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
