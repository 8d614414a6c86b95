import json
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from unillm.errors import (
    AuthFailed,
    ContextLengthExceeded,
    DecodingError,
    EncodingError,
    LLMError,
    ModelOverloaded,
    NetworkError,
    RateLimited,
    UnknownError,
    parse_retry_after,
)
from unillm.providers.framing import Frame, JsonLinesFramer, SseFramer
from unillm.schemas import (
    CanonicalEvent,
    CanonicalRequest,
    StreamEnd,
    ToolCallArgumentDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageUpdate,
)


class ModelInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    max_context_tokens: int
    max_output_tokens: Optional[int] = None
    supports_tools: bool = True
    supports_images: bool = False
    supports_streaming: bool = True
    supports_system: bool = True


class ResolvedModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    model: ModelInfo

    @property
    def id(self) -> str:
        return self.model.id


class Credential(BaseModel):
    secret: str = Field(repr=False)
    expires_at: Optional[float] = None  # epoch seconds


class WireRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    model_id: str
    method: str = "POST"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)

    def with_headers(self, extra: Mapping[str, str]) -> "WireRequest":
        return self.model_copy(update={"headers": {**self.headers, **extra}})


class ToolCallSequencer:
    """
    Keeps tool-call events in Start -> Delta* -> End order per call.

    Calls are keyed by whatever the backend uses to correlate fragments (an
    index or an id). Only one call streams at a time; fragments for any other
    call are held back and replayed once the active call ends.
    """

    def __init__(self) -> None:
        self._active: Optional[Any] = None
        self._ids: Dict[Any, str] = {}
        self._emitted_args: Dict[Any, bool] = {}
        self._pending: "OrderedDict[Any, List[CanonicalEvent]]" = OrderedDict()
        self._pending_ended: Dict[Any, bool] = {}
        self._done: set = set()

    def start(self, key: Any, call_id: str, name: str) -> List[CanonicalEvent]:
        self._ids[key] = call_id
        self._emitted_args[key] = False
        event = ToolCallStart(id=call_id, name=name)
        if self._active is None:
            self._active = key
            return [event]
        self._pending[key] = [event]
        self._pending_ended[key] = False
        return []

    def delta(self, key: Any, fragment: str) -> List[CanonicalEvent]:
        if not fragment or key in self._done:
            return []
        if key not in self._ids:
            raise DecodingError(f"tool call argument fragment for unknown call {key!r}")
        self._emitted_args[key] = True
        event = ToolCallArgumentDelta(id=self._ids[key], delta=fragment)
        if key == self._active:
            return [event]
        self._pending[key].append(event)
        return []

    def end(self, key: Any) -> List[CanonicalEvent]:
        if key not in self._ids or key in self._done:
            return []
        if key != self._active:
            self._pending_ended[key] = True
            return []
        events = self._close(key)
        while self._pending:
            next_key, buffered = self._pending.popitem(last=False)
            ended = self._pending_ended.pop(next_key)
            self._active = next_key
            events.extend(buffered)
            if not ended:
                break
            events.extend(self._close(next_key))
        return events

    def end_all(self) -> List[CanonicalEvent]:
        events: List[CanonicalEvent] = []
        while self._active is not None:
            events.extend(self.end(self._active))
        return events

    def is_open(self, key: Any) -> bool:
        return key in self._ids and key not in self._done

    @property
    def open_keys(self) -> Tuple[Any, ...]:
        return tuple(k for k in self._ids if k not in self._done)

    def _close(self, key: Any) -> List[CanonicalEvent]:
        call_id = self._ids[key]
        events: List[CanonicalEvent] = []
        # Argument deltas must concatenate to valid JSON even for no-arg calls
        if not self._emitted_args[key]:
            events.append(ToolCallArgumentDelta(id=call_id, delta="{}"))
        events.append(ToolCallEnd(id=call_id))
        self._done.add(key)
        self._active = None
        return events


class StreamDecoder:
    """Per-request decoding state: frame buffer, tool-call sequencer, end flag."""

    framing = "sse"

    def __init__(self, model: ResolvedModel) -> None:
        self.model = model
        self.framer = SseFramer() if self.framing == "sse" else JsonLinesFramer()
        self.tools = ToolCallSequencer()
        self.ended = False
        self.saw_usage = False
        self.stop_reason: Optional[str] = None

    def feed(self, chunk: bytes) -> Iterator[CanonicalEvent]:
        """Yield events frame by frame; a bad frame stops the stream after earlier frames' events."""
        for frame in self.framer.feed(chunk):
            if self.ended:
                return
            yield from self.decode_event(frame)

    def finish(self) -> Iterator[CanonicalEvent]:
        """Called on clean transport close; trailing partial data must parse."""
        for frame in self.framer.flush():
            if self.ended:
                return
            yield from self.decode_event(frame)
        if not self.ended:
            yield from self.end_stream(self.stop_reason)

    def decode_event(self, frame: Frame) -> List[CanonicalEvent]:
        raise NotImplementedError

    # helpers for subclasses
    def end_stream(self, stop_reason: Optional[str]) -> List[CanonicalEvent]:
        events = self.tools.end_all()
        self.ended = True
        events.append(StreamEnd(stop_reason=stop_reason))
        return events

    def usage(self, prompt_tokens: Any, completion_tokens: Any) -> List[CanonicalEvent]:
        prompt = _safe_int(prompt_tokens)
        completion = _safe_int(completion_tokens)
        if prompt is None and completion is None:
            return []
        self.saw_usage = True
        return [UsageUpdate(prompt_tokens=prompt or 0, completion_tokens=completion or 0)]

    @staticmethod
    def parse_json(data: str) -> Any:
        try:
            return json.loads(data)
        except json.JSONDecodeError as exc:
            raise DecodingError(f"malformed JSON frame: {exc.msg}", raw=data) from exc


class WireCodec:
    """Translate canonical requests into one backend's wire format and back."""

    provider_id: str = ""
    display_name: str = ""
    requires_credential: bool = True
    decoder_class = StreamDecoder

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def encode(self, request: CanonicalRequest, model: ResolvedModel) -> WireRequest:
        raise NotImplementedError

    def authorize(self, wire: WireRequest, credential: Optional[Credential]) -> WireRequest:
        if credential is None:
            if self.requires_credential:
                raise AuthFailed(f"no credential configured for provider '{self.provider_id}'")
            return wire
        return wire.with_headers(self.auth_headers(credential))

    def auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential.secret}"}

    def new_decoder(self, model: ResolvedModel) -> StreamDecoder:
        return self.decoder_class(model)

    def models_url(self) -> Optional[str]:
        """Endpoint listing installed models, for backends with a dynamic catalog."""
        return None

    def parse_models(self, payload: Any) -> List[ModelInfo]:
        raise NotImplementedError

    def check_headers(self, status: int, headers: Mapping[str, str]) -> Optional[LLMError]:
        """Inspect response headers before the body is read. None means proceed."""
        return None

    def translate_error(self, status: int, headers: Mapping[str, str], body: str) -> LLMError:
        message = self.error_message(body) or f"{self.display_name or self.provider_id} API error ({status})"
        retry_after = parse_retry_after(headers)
        kwargs: Dict[str, Any] = {"status_code": status, "raw": body or None}
        if self.is_context_length_error(status, body):
            return ContextLengthExceeded(message, **kwargs)
        if status in (401, 403):
            return AuthFailed(message, **kwargs)
        if status == 429:
            return RateLimited(message, retry_after=retry_after, **kwargs)
        if status in (503, 529):
            return ModelOverloaded(message, retry_after=retry_after, **kwargs)
        if status in (500, 502, 504):
            return NetworkError(message, retry_after=retry_after, **kwargs)
        if status == 413:
            return ContextLengthExceeded(message, **kwargs)
        return UnknownError(message, **kwargs)

    def error_message(self, body: str) -> Optional[str]:
        if not body:
            return None
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return body.strip()[:500] or None
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if payload.get("message"):
                return str(payload["message"])
        return None

    def is_context_length_error(self, status: int, body: str) -> bool:
        return False

    # encoding helpers
    def check_request(self, request: CanonicalRequest) -> None:
        if not request.messages:
            raise EncodingError("request must contain at least one message")
        names = [tool.name for tool in request.tools]
        if len(names) != len(set(names)):
            raise EncodingError("tool names must be unique within a request")
        for message in request.messages:
            if not message.content:
                raise EncodingError(f"message for role '{message.role}' is empty")


def merge_consecutive(turns: List[Dict[str, Any]], key: str = "content") -> List[Dict[str, Any]]:
    """Merge adjacent turns with the same role, concatenating their part lists in order."""
    merged: List[Dict[str, Any]] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1][key] = list(merged[-1][key]) + list(turn[key])
        else:
            merged.append({**turn, key: list(turn[key])})
    return merged


def _safe_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None
