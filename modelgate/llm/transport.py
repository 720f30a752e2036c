"""Provider transports.

A transport turns a ``ChatRequest`` into either a complete
``CompletionResult`` or an async stream of ``TextDelta`` events ending in a
``StreamFinish``. The bundled transports speak the OpenAI-compatible
chat-completions shape over ``httpx``; OpenRouter adds attribution headers
and reports its own cost in a response header.

Transports raise raw ``httpx`` errors (or ``StreamPayloadError`` for errors
embedded in a stream). Classification happens in the caller.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional, Sequence, Union

import httpx
import structlog

logger = structlog.get_logger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"


@dataclass(frozen=True)
class ChatRequest:
    """One chat-completion call, with model defaults already applied."""

    model_id: str
    messages: Sequence[Mapping[str, Any]]
    temperature: float
    max_output_tokens: int
    timeout_seconds: Optional[float] = None


@dataclass
class CompletionResult:
    """Complete response payload."""

    text: str
    usage: Any = None  # raw provider usage, normalized by the cost tracker
    finish_reason: Optional[str] = None
    provider_cost: Optional[float] = None


@dataclass
class TextDelta:
    """Streamed text fragment."""

    text: str


@dataclass
class StreamFinish:
    """Terminal stream event with aggregate usage."""

    text: str
    usage: Any = None
    finish_reason: Optional[str] = None
    provider_cost: Optional[float] = None


StreamEvent = Union[TextDelta, StreamFinish]


class StreamPayloadError(Exception):
    """An error object delivered inside an event stream."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChatTransport(ABC):
    """Interface every provider transport implements."""

    name: str = "transport"

    @abstractmethod
    async def complete(self, request: ChatRequest) -> CompletionResult:
        """Run a non-streaming completion."""

    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Stream a completion; the last event is a ``StreamFinish``."""

    async def aclose(self) -> None:
        """Release network resources."""


def chat_completions_url(base_url: str) -> str:
    """Endpoint URL; base URLs may already point at the endpoint itself."""
    base = base_url.rstrip("/")
    if base.endswith(CHAT_COMPLETIONS_PATH):
        return base
    return base + CHAT_COMPLETIONS_PATH


async def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    message = f"Upstream returned {response.status_code}"
    detail = _error_detail(body)
    if detail:
        message = f"{message}: {detail}"
    raise httpx.HTTPStatusError(message, request=response.request, response=response)


def _error_detail(body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return body.strip()[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:200]
        if isinstance(error, str):
            return error[:200]
    return body.strip()[:200]


class OpenAICompatibleTransport(ChatTransport):
    """Chat completions over an OpenAI-compatible HTTP API.

    Example:
        transport = OpenAICompatibleTransport(
            name="vercel-gateway",
            api_key=os.environ["VERCEL_AI_GATEWAY_API_KEY"],
            base_url="https://ai-gateway.vercel.sh/v1/chat/completions",
        )
        result = await transport.complete(request)
    """

    def __init__(
        self,
        name: str,
        api_key: str,
        base_url: str,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.name = name
        self.url = chat_completions_url(base_url)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            **(headers or {}),
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    def _payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model_id,
            "messages": [dict(message) for message in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_output_tokens,
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _timeout(self, request: ChatRequest) -> httpx.Timeout | None:
        if request.timeout_seconds is None:
            return None
        return httpx.Timeout(request.timeout_seconds)

    def provider_cost(self, response: httpx.Response) -> Optional[float]:
        """Cost reported by the provider for this response, if any."""
        return None

    async def complete(self, request: ChatRequest) -> CompletionResult:
        response = await self._client.post(
            self.url,
            json=self._payload(request, stream=False),
            headers=self._headers,
            timeout=self._timeout(request),
        )
        await _raise_for_status(response)
        data = response.json()

        choices = data.get("choices") or []
        choice = choices[0] if choices else {}
        message = choice.get("message") or {}
        return CompletionResult(
            text=message.get("content") or "",
            usage=data.get("usage"),
            finish_reason=choice.get("finish_reason"),
            provider_cost=self.provider_cost(response),
        )

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        parts: list[str] = []
        usage: Any = None
        finish_reason: Optional[str] = None

        async with self._client.stream(
            "POST",
            self.url,
            json=self._payload(request, stream=True),
            headers=self._headers,
            timeout=self._timeout(request),
        ) as response:
            await _raise_for_status(response)

            async for line in response.aiter_lines():
                line = line.strip()
                if not line or line.startswith(":") or not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    break

                chunk = json.loads(data)
                error = chunk.get("error")
                if error:
                    code = error.get("code") if isinstance(error, dict) else None
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    raise StreamPayloadError(
                        message or "Stream error", code if isinstance(code, int) else None
                    )

                if chunk.get("usage"):
                    usage = chunk["usage"]
                for choice in chunk.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        parts.append(content)
                        yield TextDelta(content)
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]

            provider_cost = self.provider_cost(response)

        yield StreamFinish(
            text="".join(parts),
            usage=usage,
            finish_reason=finish_reason,
            provider_cost=provider_cost,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OpenRouterTransport(OpenAICompatibleTransport):
    """OpenRouter: attribution headers and header-reported cost."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        app_url: str,
        app_name: str,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            name="openrouter",
            api_key=api_key,
            base_url=base_url,
            headers={"HTTP-Referer": app_url, "X-Title": app_name},
            client=client,
        )

    def provider_cost(self, response: httpx.Response) -> Optional[float]:
        header = response.headers.get("x-openrouter-cost")
        if header is None:
            return None
        try:
            return float(header)
        except ValueError:
            logger.debug("Ignoring unparseable OpenRouter cost header", value=header)
            return None
