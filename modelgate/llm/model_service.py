"""Model selection and resilient execution.

The model service picks a model for a request, builds and caches one
transport per model key, executes calls with a bounded fallback sequence, and
feeds every outcome into the provider health service and the cost tracker.

Fallback policy for a retryable failure of model ``M``:

1. one hop to ``M``'s same-provider fallback, if configured;
2. then one hop to ``M``'s cross-provider equivalent, if fallback is enabled.

Hops run strictly one after another. The caller receives the first success or
the last error.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass, replace
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
)

import structlog

from modelgate.exceptions import ErrorKind, GatewayError, UnknownModelError, classify_error
from modelgate.execution.circuit_breaker import to_iso
from modelgate.llm.cost_tracker import (
    CostAggregate,
    CostRecord,
    CostTracker,
    TokenUsage,
    create_cost_record,
    extract_token_usage,
)
from modelgate.llm.model_registry import ModelDefinition, ModelRegistry
from modelgate.llm.provider_health import HealthStatus, ProviderHealthService, ProviderMetrics
from modelgate.llm.registry import build_transport
from modelgate.llm.transport import ChatRequest, ChatTransport, StreamEvent, StreamFinish
from modelgate.observability import (
    LLM_CALL_DURATION,
    LLM_COST_USD,
    LLM_REQUEST_COUNT,
    LLM_TOKENS,
    span,
)
from modelgate.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Messages = Sequence[Mapping[str, Any]]
TransportFactory = Callable[[ModelDefinition], ChatTransport]
FinishCallback = Callable[["ChatFinish"], Optional[Awaitable[None]]]

COMPLEX_MESSAGE_COUNT = 12
COMPLEX_INPUT_CHARS = 2000

_FAST_KEYWORDS = ("quick", "tech", "analysis")
_REASONING_KEYWORDS = ("reason", "interpret", "research")
_GENERAL_KEYWORDS = ("news", "sentiment")


@dataclass
class ModelMetrics:
    """Per-model-key request accounting."""

    total_requests: int = 0
    total_completed: int = 0
    total_errors: int = 0
    total_aborted: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    total_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    last_latency_ms: float = 0.0
    last_used_at: Optional[float] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_completed": self.total_completed,
            "total_errors": self.total_errors,
            "total_aborted": self.total_aborted,
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "total_latency_ms": self.total_latency_ms,
            "avg_latency_ms": self.avg_latency_ms,
            "last_latency_ms": self.last_latency_ms,
            "last_used_at": to_iso(self.last_used_at),
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class ModelSelection:
    """Outcome of ``select_model``."""

    model: str
    provider: str
    reason: str  # preferred, task-map, task-keyword, complexity, default, provider-fallback
    fallback_chain: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "reason": self.reason,
            "fallback_chain": list(self.fallback_chain),
        }


@dataclass(frozen=True)
class ChatResult:
    """Completed chat call, labelled with the model that actually answered."""

    text: str
    model: str
    provider: str
    usage: Optional[TokenUsage]
    cost_usd: float
    latency_ms: float
    finish_reason: Optional[str] = None
    is_fallback: bool = False


@dataclass(frozen=True)
class ChatFinish:
    """Passed to a stream's ``on_finish`` callback once the stream completes."""

    text: str
    model: str
    provider: str
    usage: Optional[TokenUsage]
    cost_usd: float
    latency_ms: float
    finish_reason: Optional[str] = None


def _chain(error: GatewayError, cause: BaseException) -> GatewayError:
    if error is not cause:
        error.__cause__ = cause
        error.__suppress_context__ = True
    return error


class ChatStream:
    """Text stream for one model attempt that has already produced its first event.

    Iterate it to receive text fragments. Usage, cost and health bookkeeping
    run when the upstream stream finishes, followed by the caller's
    ``on_finish``; iteration ends only after both complete. ``finish`` holds
    the summary afterwards.
    """

    def __init__(
        self,
        service: ModelService,
        model_key: str,
        provider: str,
        events: AsyncIterator[StreamEvent],
        first_event: Optional[StreamEvent],
        started_at: float,
        user_id: Optional[str],
        on_finish: Optional[FinishCallback],
        is_fallback: bool,
    ):
        self.model = model_key
        self.provider = provider
        self.is_fallback = is_fallback
        self.finish: Optional[ChatFinish] = None
        self._service = service
        self._events = events
        self._pending = first_event
        self._started_at = started_at
        self._user_id = user_id
        self._on_finish = on_finish
        self._parts: list[str] = []
        self._consumed = False
        self._settled = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("ChatStream can only be iterated once")
        self._consumed = True
        return self._iterate()

    async def _next_event(self) -> Optional[StreamEvent]:
        if self._pending is not None:
            event, self._pending = self._pending, None
            return event
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            return None
        except Exception as exc:
            self._settled = True
            error = self._service._record_attempt_failure(self.model, exc)
            raise _chain(error, exc)

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            while True:
                event = await self._next_event()
                if event is None:
                    event = StreamFinish(text="".join(self._parts))
                if isinstance(event, StreamFinish):
                    self._settled = True
                    self.finish = await self._service._complete_stream(self, event)
                    return
                self._parts.append(event.text)
                yield event.text
        finally:
            if not self._settled:
                self._settled = True
                self._service._record_stream_abort(self.model)
            closer = getattr(self._events, "aclose", None)
            if closer is not None:
                await closer()

    async def text(self) -> str:
        """Drain the stream and return the full text."""
        parts = [chunk async for chunk in self]
        return "".join(parts)


class ModelService:
    """Selects models and executes chat calls with fallback.

    Example:
        service = ModelService(registry, health, costs, settings)

        selection = service.select_model(task_type="quick-pulse")
        result = await service.generate_chat(selection.model, messages)

        stream = await service.stream_chat(selection.model, messages, on_finish=save)
        async for chunk in stream:
            send(chunk)
    """

    def __init__(
        self,
        registry: ModelRegistry,
        health: ProviderHealthService,
        cost_tracker: CostTracker,
        settings: Settings,
        transport_factory: TransportFactory | None = None,
        timer: Callable[[], float] = time.perf_counter,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.health = health
        self.cost_tracker = cost_tracker
        self.enable_fallback = settings.enable_provider_fallback
        self.slow_response_ms = settings.slow_response_ms
        self._transport_factory = transport_factory or (
            lambda model: build_transport(model, settings)
        )
        self._timer = timer
        self._clock = clock
        self._transports: dict[str, ChatTransport] = {}
        self._metrics: dict[str, ModelMetrics] = {key: ModelMetrics() for key in registry.keys()}

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _keyword_model(self, task: str) -> Optional[str]:
        routing = self.registry.routing
        if any(word in task for word in _FAST_KEYWORDS):
            return routing.fast_model
        if any(word in task for word in _REASONING_KEYWORDS):
            return routing.reasoning_model
        if any(word in task for word in _GENERAL_KEYWORDS):
            return routing.general_model
        return None

    def select_model(
        self,
        preferred_model: Optional[str] = None,
        task_type: Optional[str] = None,
        message_count: Optional[int] = None,
        input_chars: Optional[int] = None,
    ) -> ModelSelection:
        """Pick a model for a request. Never raises.

        Resolution order: preferred model (aliases accepted), exact task-map
        entry, task keywords, conversation complexity, default model. An
        unhealthy transport is then swapped for a healthy cross-provider
        equivalent when fallback is enabled.
        """
        routing = self.registry.routing
        task = task_type.strip().lower() if task_type else ""

        preferred = self.registry.resolve(preferred_model)
        keyword_model = self._keyword_model(task) if task else None

        if preferred:
            model, reason = preferred, "preferred"
        elif task and task in routing.task_model_map:
            model, reason = routing.task_model_map[task], "task-map"
        elif keyword_model:
            model, reason = keyword_model, "task-keyword"
        elif routing.reasoning_model and (
            (message_count or 0) > COMPLEX_MESSAGE_COUNT or (input_chars or 0) > COMPLEX_INPUT_CHARS
        ):
            model, reason = routing.reasoning_model, "complexity"
        else:
            model, reason = routing.default_model, "default"

        transport = self.registry.transport_of(model)
        if self.enable_fallback and not self.health.is_provider_healthy(transport):
            cross = self.registry.cross_provider_equivalent(model)
            if cross and self.health.is_provider_healthy(cross.to_transport):
                logger.info(
                    "Switching to cross-provider fallback due to unhealthy provider",
                    original_model=model,
                    original_provider=transport,
                    fallback_model=cross.to_model,
                    fallback_provider=cross.to_transport,
                )
                self.health.record_fallback(transport)
                model, reason = cross.to_model, "provider-fallback"

        return ModelSelection(
            model=model,
            provider=self.registry.transport_of(model),
            reason=reason,
            fallback_chain=tuple(self.build_fallback_chain(model)),
        )

    def build_fallback_chain(self, model_key: str) -> list[str]:
        """Same-provider hops in order, then the cross-provider equivalent."""
        chain: list[str] = []
        visited = {model_key}
        current = model_key
        for _ in range(len(self.registry.models)):
            next_model = self.registry.next_fallback(current)
            if next_model is None or next_model in visited:
                break
            chain.append(next_model)
            visited.add(next_model)
            current = next_model

        cross = self._cross_provider_fallback(model_key)
        if cross and cross not in visited:
            chain.append(cross)
        return chain

    def _cross_provider_fallback(self, model_key: str) -> Optional[str]:
        if not self.enable_fallback:
            return None
        equivalent = self.registry.cross_provider_equivalent(model_key)
        return equivalent.to_model if equivalent else None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _require_model(self, name: str) -> str:
        key = self.registry.resolve(name)
        if key is None:
            raise UnknownModelError(name)
        return key

    def _get_transport(self, model_key: str) -> ChatTransport:
        transport = self._transports.get(model_key)
        if transport is None:
            transport = self._transport_factory(self.registry.get(model_key))
            self._transports[model_key] = transport
        return transport

    def _build_request(
        self,
        model: ModelDefinition,
        messages: Messages,
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> ChatRequest:
        return ChatRequest(
            model_id=model.id,
            messages=list(messages),
            temperature=model.temperature if temperature is None else temperature,
            max_output_tokens=model.max_tokens if max_tokens is None else max_tokens,
            timeout_seconds=model.timeout_seconds,
        )

    def _metric(self, model_key: str) -> ModelMetrics:
        metric = self._metrics.get(model_key)
        if metric is None:
            metric = self._metrics[model_key] = ModelMetrics()
        return metric

    def _record_attempt_failure(self, model_key: str, exc: BaseException) -> GatewayError:
        """Normalize a failure and record it before any fallback or rethrow."""
        model = self.registry.get(model_key)
        error = classify_error(exc, provider=model.transport, model_key=model_key)

        metric = self._metric(model_key)
        metric.total_errors += 1
        metric.last_error = error.message

        # Incomplete configuration says nothing about the provider's health.
        if error.kind is not ErrorKind.CONFIG:
            self.health.record_failure(model.transport, error)
        LLM_REQUEST_COUNT.labels(transport=model.transport, model=model_key, outcome="error").inc()

        logger.warning(
            "Model request failed",
            model=model_key,
            transport=model.transport,
            kind=error.kind.value,
            retryable=error.retryable,
            error=error.message,
        )
        return error

    def _record_stream_abort(self, model_key: str) -> None:
        """Count a stream the consumer stopped reading before it finished.

        Provider health is left alone since the upstream did not fail.
        """
        model = self.registry.get(model_key)
        self._metric(model_key).total_aborted += 1
        LLM_REQUEST_COUNT.labels(transport=model.transport, model=model_key, outcome="aborted").inc()
        logger.info("Stream abandoned by consumer", model=model_key, transport=model.transport)

    def _record_success(
        self,
        model_key: str,
        latency_ms: float,
        raw_usage: Any,
        provider_cost: Optional[float],
        user_id: Optional[str],
    ) -> tuple[Optional[TokenUsage], CostRecord]:
        model = self.registry.get(model_key)
        usage = extract_token_usage(raw_usage)
        record = create_cost_record(model, usage, override_cost=provider_cost, timestamp=self._clock())

        metric = self._metric(model_key)
        metric.total_completed += 1
        metric.total_latency_ms += latency_ms
        metric.last_latency_ms = latency_ms
        metric.avg_latency_ms = round(metric.total_latency_ms / metric.total_completed)
        metric.last_used_at = self._clock()
        if usage and usage.total_tokens:
            metric.total_tokens += usage.total_tokens
        metric.total_cost_usd += record.total_cost_usd

        self.health.record_success(model.transport, latency_ms, record.total_cost_usd)
        self.cost_tracker.record_cost(record, user_id)

        LLM_CALL_DURATION.labels(transport=model.transport, model=model_key).observe(
            latency_ms / 1000
        )
        LLM_REQUEST_COUNT.labels(transport=model.transport, model=model_key, outcome="success").inc()
        LLM_TOKENS.labels(transport=model.transport, model=model_key, direction="input").inc(
            record.input_tokens
        )
        LLM_TOKENS.labels(transport=model.transport, model=model_key, direction="output").inc(
            record.output_tokens
        )
        if record.total_cost_usd > 0:
            LLM_COST_USD.labels(transport=model.transport, model=model_key).inc(
                record.total_cost_usd
            )

        if latency_ms > self.slow_response_ms:
            logger.warning(
                "Slow model response",
                model=model_key,
                transport=model.transport,
                latency_ms=round(latency_ms),
                threshold_ms=self.slow_response_ms,
            )
        logger.info(
            "Model request completed",
            model=model_key,
            transport=model.transport,
            latency_ms=round(latency_ms),
            tokens=usage.total_tokens if usage else None,
            cost_usd=f"{record.total_cost_usd:.6f}",
        )
        return usage, record

    async def _execute(
        self,
        model_key: str,
        attempt: Callable[[str, bool], Awaitable[T]],
    ) -> T:
        try:
            return await attempt(model_key, False)
        except Exception as exc:
            error = _chain(self._record_attempt_failure(model_key, exc), exc)
            if not error.retryable:
                raise error

        last_error = error
        same_provider = self.registry.next_fallback(model_key)
        if same_provider:
            logger.warning(
                "Falling back to same-provider model",
                from_model=model_key,
                to_model=same_provider,
                reason=error.message,
            )
            LLM_REQUEST_COUNT.labels(
                transport=self.registry.transport_of(model_key), model=model_key, outcome="fallback"
            ).inc()
            try:
                return await attempt(same_provider, True)
            except Exception as exc:
                last_error = _chain(self._record_attempt_failure(same_provider, exc), exc)

        cross_provider = self._cross_provider_fallback(model_key)
        if cross_provider and cross_provider not in (model_key, same_provider):
            logger.warning(
                "Falling back to cross-provider model",
                from_model=model_key,
                to_model=cross_provider,
                reason=error.message,
            )
            LLM_REQUEST_COUNT.labels(
                transport=self.registry.transport_of(model_key), model=model_key, outcome="fallback"
            ).inc()
            try:
                return await attempt(cross_provider, True)
            except Exception as exc:
                last_error = _chain(self._record_attempt_failure(cross_provider, exc), exc)

        raise last_error

    async def generate_chat(
        self,
        model: str,
        messages: Messages,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> ChatResult:
        """Run a chat completion with fallback.

        Args:
            model: Model key or alias.
            messages: Chat messages (``role`` / ``content`` mappings).
            temperature: Overrides the model default.
            max_tokens: Overrides the model default.
            user_id: Attributes the cost to a user bucket.

        Raises:
            UnknownModelError: The model is not registered.
            GatewayError: The last error after fallbacks are exhausted.
        """
        model_key = self._require_model(model)

        async def attempt(key: str, is_fallback: bool) -> ChatResult:
            definition = self.registry.get(key)
            transport = self._get_transport(key)
            self._metric(key).total_requests += 1
            request = self._build_request(definition, messages, temperature, max_tokens)

            logger.info(
                "Generate request started",
                model=key,
                transport=definition.transport,
                is_fallback=is_fallback,
            )
            start = self._timer()
            with span(
                "modelgate.generate",
                {"model": key, "transport": definition.transport, "is_fallback": is_fallback},
            ):
                result = await transport.complete(request)
            latency_ms = (self._timer() - start) * 1000

            usage, record = self._record_success(
                key, latency_ms, result.usage, result.provider_cost, user_id
            )
            return ChatResult(
                text=result.text,
                model=key,
                provider=definition.transport,
                usage=usage,
                cost_usd=record.total_cost_usd,
                latency_ms=latency_ms,
                finish_reason=result.finish_reason,
                is_fallback=is_fallback,
            )

        return await self._execute(model_key, attempt)

    async def stream_chat(
        self,
        model: str,
        messages: Messages,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_id: Optional[str] = None,
        on_finish: Optional[FinishCallback] = None,
    ) -> ChatStream:
        """Open a chat stream with fallback.

        The first upstream event is awaited before returning, so connection
        failures take the fallback path. Failures after that are recorded and
        raised from the iteration.
        """
        model_key = self._require_model(model)

        async def attempt(key: str, is_fallback: bool) -> ChatStream:
            definition = self.registry.get(key)
            transport = self._get_transport(key)
            self._metric(key).total_requests += 1
            request = self._build_request(definition, messages, temperature, max_tokens)

            logger.info(
                "Stream request started",
                model=key,
                transport=definition.transport,
                is_fallback=is_fallback,
            )
            start = self._timer()
            events = transport.stream(request).__aiter__()
            with span(
                "modelgate.stream",
                {"model": key, "transport": definition.transport, "is_fallback": is_fallback},
            ):
                try:
                    first_event: Optional[StreamEvent] = await events.__anext__()
                except StopAsyncIteration:
                    first_event = None
            return ChatStream(
                service=self,
                model_key=key,
                provider=definition.transport,
                events=events,
                first_event=first_event,
                started_at=start,
                user_id=user_id,
                on_finish=on_finish,
                is_fallback=is_fallback,
            )

        return await self._execute(model_key, attempt)

    async def _complete_stream(self, stream: ChatStream, event: StreamFinish) -> ChatFinish:
        latency_ms = (self._timer() - stream._started_at) * 1000
        usage, record = self._record_success(
            stream.model, latency_ms, event.usage, event.provider_cost, stream._user_id
        )
        finish = ChatFinish(
            text=event.text,
            model=stream.model,
            provider=stream.provider,
            usage=usage,
            cost_usd=record.total_cost_usd,
            latency_ms=latency_ms,
            finish_reason=event.finish_reason,
        )
        if stream._on_finish is not None:
            outcome = stream._on_finish(finish)
            if inspect.isawaitable(outcome):
                await outcome
        return finish

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_metrics(self) -> dict[str, ModelMetrics]:
        return {key: replace(metric) for key, metric in self._metrics.items()}

    def get_provider_health(self) -> dict[str, ProviderMetrics]:
        return self.health.get_all_metrics()

    def get_provider_status(self) -> dict[str, HealthStatus]:
        return self.health.get_all_health()

    def get_cost_stats(self) -> CostAggregate:
        return self.cost_tracker.get_all_stats()

    async def aclose(self) -> None:
        """Close every cached transport."""
        transports = list(self._transports.values())
        self._transports.clear()
        for transport in transports:
            await transport.aclose()
