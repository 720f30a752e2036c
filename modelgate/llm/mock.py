"""Mock transport for testing."""

from __future__ import annotations

from typing import Any, AsyncIterator, Iterable, Optional, Union

from modelgate.llm.transport import (
    ChatRequest,
    ChatTransport,
    CompletionResult,
    StreamEvent,
    StreamFinish,
    TextDelta,
)

ScriptedOutcome = Union[str, CompletionResult, BaseException]

DEFAULT_USAGE = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}


class MockTransport(ChatTransport):
    """Transport that answers from a script instead of the network.

    Each call consumes the next scripted outcome: a string or
    ``CompletionResult`` is returned, an exception is raised. When the script
    is exhausted the transport echoes the last user message.

    Streams split the response text on spaces. An exception outcome is raised
    before the first event; ``fail_mid_stream`` is raised after the first
    chunk has been delivered.
    """

    def __init__(
        self,
        name: str = "mock",
        outcomes: Iterable[ScriptedOutcome] = (),
        usage: Any = DEFAULT_USAGE,
        provider_cost: Optional[float] = None,
        fail_mid_stream: BaseException | None = None,
    ):
        self.name = name
        self.outcomes = list(outcomes)
        self.usage = usage
        self.provider_cost = provider_cost
        self.fail_mid_stream = fail_mid_stream
        self.requests: list[ChatRequest] = []
        self.closed = False

    def _next(self, request: ChatRequest) -> CompletionResult:
        self.requests.append(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, CompletionResult):
                return outcome
            text = outcome
        else:
            last_user = next(
                (m.get("content", "") for m in reversed(request.messages) if m.get("role") == "user"),
                "",
            )
            text = f"mock response: {last_user}"
        return CompletionResult(
            text=text,
            usage=self.usage,
            finish_reason="stop",
            provider_cost=self.provider_cost,
        )

    async def complete(self, request: ChatRequest) -> CompletionResult:
        return self._next(request)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        result = self._next(request)
        words = result.text.split(" ")
        for index, word in enumerate(words):
            yield TextDelta(word if index == 0 else f" {word}")
            if index == 0 and self.fail_mid_stream is not None:
                raise self.fail_mid_stream
        yield StreamFinish(
            text=result.text,
            usage=result.usage,
            finish_reason=result.finish_reason,
            provider_cost=result.provider_cost,
        )

    async def aclose(self) -> None:
        self.closed = True
