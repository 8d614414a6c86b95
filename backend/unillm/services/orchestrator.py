"""
Completion orchestration.

`CompletionOrchestrator.complete()` validates and encodes synchronously, so
caller bugs (unknown model, missing capability, unencodable request) fail
before any network I/O. The returned `RequestHandle` is an async iterator of
canonical events; iterating it sends the request (with retries), streams
the body through the codec's decoder and ends with exactly one `StreamEnd`
or `StreamError`. Cancelling closes the connection and stops the stream.
"""
import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random
from tenacity.wait import wait_base

from unillm.core.config import Settings, settings
from unillm.errors import (
    DecodingError,
    EncodingError,
    ErrorKind,
    LLMError,
    NetworkError,
    UnknownError,
    UnsupportedCapability,
)
from unillm.providers.base import ResolvedModel, StreamDecoder, WireCodec, WireRequest
from unillm.schemas import (
    CanonicalEvent,
    CanonicalRequest,
    CompletionResult,
    StreamEnd,
    StreamError,
    TextDelta,
    ToolCallArgumentDelta,
    ToolCallEnd,
    ToolCallPart,
    ToolCallStart,
    UsageUpdate,
)
from unillm.services.credentials import CredentialSource
from unillm.services.registry import ModelCatalog, ProviderRegistry, RegistryRef
from unillm.services.telemetry import TelemetryEvent, TelemetrySink, emit
from unillm.services.tokens import TokenAccountant
from unillm.services.transport import ByteStream, HttpTransport

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class RequestState(str, Enum):
    IDLE = "idle"
    ENCODING = "encoding"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED})


class CompletionOptions(BaseModel):
    max_attempts: int = 4
    initial_backoff: float = 0.5
    max_backoff: float = 30.0
    request_timeout: Optional[float] = 300.0
    cancel_grace: float = 2.0

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "CompletionOptions":
        config = config or settings
        return cls(
            max_attempts=config.RETRY_MAX_ATTEMPTS,
            initial_backoff=config.RETRY_INITIAL_SECONDS,
            max_backoff=config.RETRY_MAX_SECONDS,
            request_timeout=config.REQUEST_TIMEOUT_SECONDS,
            cancel_grace=config.CANCEL_GRACE_SECONDS,
        )


def backoff(options: CompletionOptions) -> wait_base:
    """Exponential backoff capped at max_backoff, plus up to one initial step of jitter."""
    return wait_exponential(multiplier=options.initial_backoff, max=options.max_backoff) + wait_random(
        0, options.initial_backoff
    )


class wait_retry_after(wait_base):
    """Backoff that never undercuts the backend's retry-after hint."""

    def __init__(self, fallback: wait_base) -> None:
        self.fallback = fallback

    def __call__(self, retry_state) -> float:
        delay = self.fallback(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, "retry_after", None)
        if hint is not None:
            return max(delay, float(hint))
        return delay


def _is_retriable(exc: BaseException) -> bool:
    return isinstance(exc, LLMError) and exc.retriable


def validate_capabilities(request: CanonicalRequest, model: ResolvedModel) -> None:
    info = model.model
    if not info.supports_streaming:
        raise UnsupportedCapability(f"model '{info.id}' does not support streaming")
    if request.tools and not info.supports_tools:
        raise UnsupportedCapability(f"model '{info.id}' does not support tool calling")
    if request.has_images() and not info.supports_images:
        raise UnsupportedCapability(f"model '{info.id}' does not accept images")
    if request.has_system() and not info.supports_system:
        raise UnsupportedCapability(f"model '{info.id}' does not accept system messages")


_DONE = object()


class RequestHandle:
    """One in-flight completion. Iterate it for events; `cancel()` to stop."""

    def __init__(
        self,
        *,
        request: CanonicalRequest,
        model: ResolvedModel,
        codec: WireCodec,
        wire: WireRequest,
        transport: HttpTransport,
        credentials: Optional[CredentialSource],
        accountant: TokenAccountant,
        options: CompletionOptions,
        telemetry: Optional[TelemetrySink] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.request = request
        self.model = model
        self.state = RequestState.ENCODING
        self.attempts = 0
        self.error: Optional[LLMError] = None

        self._codec = codec
        self._wire = wire
        self._transport = transport
        self._credentials = credentials
        self._accountant = accountant
        self._options = options
        self._telemetry = telemetry
        self._sleep = sleep

        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=1)
        self._task: Optional[asyncio.Task] = None
        self._stream: Optional[ByteStream] = None
        self._cancelled = False
        self._exhausted = False
        self._refreshed = False
        self._started_at: Optional[float] = None
        self._completion_text: List[str] = []
        self._usage: Optional[UsageUpdate] = None
        self._log = logger.bind(request_id=self.id, provider=model.provider_id, model=model.id)

    # iteration
    def __aiter__(self) -> "RequestHandle":
        return self

    async def __anext__(self) -> CanonicalEvent:
        if self._cancelled or self._exhausted:
            raise StopAsyncIteration
        self.start()
        item = await self._queue.get()
        if item is _DONE or self._cancelled:
            self._exhausted = True
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "RequestHandle":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cancel()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._pump())

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def transport_closed(self) -> bool:
        return self._stream is None or self._stream.closed

    async def cancel(self) -> None:
        """Stop the request; no events are yielded once this returns."""
        if self._cancelled:
            return
        self._cancelled = True
        was_running = self.state not in TERMINAL_STATES
        if was_running:
            self.state = RequestState.CANCELLED
        try:
            self._queue.put_nowait(_DONE)
        except asyncio.QueueFull:
            pass

        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait({self._task}, timeout=self._options.cancel_grace)
        if self._stream is not None and not self._stream.closed:
            await self._stream.aclose()

        if was_running:
            self._log.info("completion_cancelled", attempts=self.attempts)
            await emit(self._telemetry, self._telemetry_event("request_cancelled"))

    aclose = cancel

    # driving the request
    async def _pump(self) -> None:
        try:
            await self._drive()
        except Exception as exc:
            self._log.exception("completion_crashed")
            await self._fail(UnknownError(f"internal error: {exc}"))
        finally:
            await self._release()
        await self._queue.put(_DONE)

    async def _drive(self) -> None:
        self._started_at = time.perf_counter()
        await emit(self._telemetry, self._telemetry_event("request_started"))
        try:
            async with asyncio.timeout(self._options.request_timeout):
                await self._stream_events()
        except TimeoutError:
            await self._fail(NetworkError(f"request exceeded {self._options.request_timeout}s total timeout"))
        except LLMError as err:
            await self._fail(err)

    async def _stream_events(self) -> None:
        self.state = RequestState.SENDING
        self._stream = await self._send()
        self.state = RequestState.STREAMING
        decoder = self._codec.new_decoder(self.model)
        async for chunk in self._stream.chunks():
            for event in decoder.feed(chunk):
                if await self._forward(event, decoder):
                    return
            if self._cancelled:
                return
        if self._cancelled:
            return
        for event in decoder.finish():
            if await self._forward(event, decoder):
                return

    async def _forward(self, event: CanonicalEvent, decoder: StreamDecoder) -> bool:
        """Deliver one event; True once the stream has ended."""
        if isinstance(event, TextDelta):
            self._completion_text.append(event.text)
        elif isinstance(event, ToolCallArgumentDelta):
            self._completion_text.append(event.delta)
        elif isinstance(event, UsageUpdate):
            self._usage = event
        elif isinstance(event, StreamEnd):
            if not decoder.saw_usage:
                self._usage = self._accountant.estimate(self.request, self.model.id, "".join(self._completion_text))
                await self._put(self._usage)
            self.state = RequestState.COMPLETED
            await self._put(event)
            self._log.info(
                "completion_finished",
                stop_reason=event.stop_reason,
                attempts=self.attempts,
                prompt_tokens=self._usage.prompt_tokens if self._usage else None,
                completion_tokens=self._usage.completion_tokens if self._usage else None,
            )
            await emit(self._telemetry, self._telemetry_event("request_completed"))
            return True
        await self._put(event)
        return False

    async def _put(self, event: CanonicalEvent) -> None:
        if self._cancelled:
            return
        await self._queue.put(event)

    async def _fail(self, err: LLMError) -> None:
        if self._cancelled:
            return
        self.error = err
        self.state = RequestState.FAILED
        if isinstance(err, DecodingError):
            self._log.error("stream_decode_failed", err=err.message, raw=err.raw)
        else:
            self._log.warning("completion_failed", kind=err.kind.value, err=err.message, status=err.status_code)
        await self._put(StreamError.from_error(err))
        await emit(self._telemetry, self._telemetry_event("request_failed", err.kind))

    async def _send(self) -> ByteStream:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._options.max_attempts),
            wait=wait_retry_after(backoff(self._options)),
            retry=retry_if_exception(_is_retriable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(self._open_once)

    async def _open_once(self) -> ByteStream:
        self.attempts += 1
        credential = None
        if self._credentials is not None:
            credential = await self._credentials.get_credential(self.model.provider_id)
        wire = self._codec.authorize(self._wire, credential)
        stream = await self._transport.open(wire)
        if stream.status_code < 400:
            return stream

        try:
            err = self._codec.check_headers(stream.status_code, stream.headers)
            if err is None:
                body = await stream.read_text()
                err = self._codec.translate_error(stream.status_code, stream.headers, body)
        finally:
            await stream.aclose()

        refresh = getattr(self._credentials, "refresh_credential", None)
        if err.token_expired and refresh is not None and not self._refreshed:
            self._refreshed = True
            self._log.info("credential_expired_refreshing")
            await refresh(self.model.provider_id)
            return await self._open_once()
        raise err

    def _log_retry(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._log.warning(
            "completion_retrying",
            attempt=retry_state.attempt_number,
            kind=getattr(getattr(exc, "kind", None), "value", None),
            sleep=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        )

    async def _release(self) -> None:
        if self._stream is not None and not self._stream.closed:
            await self._stream.aclose()

    def _telemetry_event(self, name: str, error_kind: Optional[ErrorKind] = None) -> TelemetryEvent:
        latency = None
        if self._started_at is not None:
            latency = int((time.perf_counter() - self._started_at) * 1000)
        return TelemetryEvent(
            name=name,
            request_id=self.id,
            provider_id=self.model.provider_id,
            model_id=self.model.id,
            latency_ms=latency,
            attempts=self.attempts,
            prompt_tokens=self._usage.prompt_tokens if self._usage else None,
            completion_tokens=self._usage.completion_tokens if self._usage else None,
            usage_estimated=self._usage.estimated if self._usage else False,
            error_kind=error_kind,
        )


class CompletionOrchestrator:
    """Public entry point: pick provider and model, then stream canonical events."""

    def __init__(
        self,
        registry: Optional[RegistryRef] = None,
        transport: Optional[HttpTransport] = None,
        *,
        accountant: Optional[TokenAccountant] = None,
        telemetry: Optional[TelemetrySink] = None,
        options: Optional[CompletionOptions] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry or RegistryRef(ProviderRegistry.build())
        self.transport = transport or HttpTransport()
        self.accountant = accountant or TokenAccountant()
        self.telemetry = telemetry
        self.options = options or CompletionOptions.from_settings()
        self.catalog = ModelCatalog(self.registry, self.transport)
        self._sleep = sleep

    def list_providers(self):
        return self.registry.current.list_providers()

    async def list_models(self, provider_id: str):
        """Static catalogs come from the registry; dynamic ones are fetched once per TTL."""
        return await self.catalog.refresh(provider_id)

    async def refresh_models(self, provider_id: str, force: bool = False):
        return await self.catalog.refresh(provider_id, force=force)

    def complete(
        self,
        request: CanonicalRequest,
        provider_id: str,
        model_id: str,
        credentials: Optional[CredentialSource] = None,
        *,
        registry: Optional[ProviderRegistry] = None,
        options: Optional[CompletionOptions] = None,
    ) -> RequestHandle:
        snapshot = registry or self.registry.current
        model = snapshot.resolve(provider_id, model_id)
        validate_capabilities(request, model)
        codec = snapshot.get(provider_id).codec
        try:
            wire = codec.encode(request, model)
        except LLMError:
            raise
        except (TypeError, ValueError) as exc:
            raise EncodingError(f"could not encode request for {provider_id}: {exc}") from exc
        logger.debug("completion_encoded", provider=provider_id, model=model_id, url=wire.url)
        return RequestHandle(
            request=request,
            model=model,
            codec=codec,
            wire=wire,
            transport=self.transport,
            credentials=credentials,
            accountant=self.accountant,
            options=options or self.options,
            telemetry=self.telemetry,
            sleep=self._sleep,
        )

    async def aclose(self) -> None:
        await self.transport.aclose()


async def collect(handle: RequestHandle) -> CompletionResult:
    """Drain a handle into one aggregated result."""
    result = CompletionResult()
    text: List[str] = []
    calls: dict = {}
    order: List[str] = []
    async for event in handle:
        if isinstance(event, TextDelta):
            text.append(event.text)
        elif isinstance(event, ToolCallStart):
            calls[event.id] = {"name": event.name, "args": []}
            order.append(event.id)
        elif isinstance(event, ToolCallArgumentDelta):
            calls[event.id]["args"].append(event.delta)
        elif isinstance(event, ToolCallEnd):
            pass
        elif isinstance(event, UsageUpdate):
            result.usage = event
        elif isinstance(event, StreamEnd):
            result.stop_reason = event.stop_reason
        elif isinstance(event, StreamError):
            result.error = event
    result.text = "".join(text)
    for call_id in order:
        raw = "".join(calls[call_id]["args"]) or "{}"
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError:
            arguments = {"_raw": raw}
        result.tool_calls.append(ToolCallPart(id=call_id, name=calls[call_id]["name"], arguments=arguments))
    return result
