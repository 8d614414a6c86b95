import json
from typing import Any, Dict, List, Mapping, Optional

from unillm.core.config import settings
from unillm.errors import (
    AuthFailed,
    ContextLengthExceeded,
    EncodingError,
    LLMError,
    ModelOverloaded,
    RateLimited,
    UnknownError,
    parse_duration,
)
from unillm.providers.base import (
    Credential,
    ResolvedModel,
    StreamDecoder,
    WireCodec,
    WireRequest,
    merge_consecutive,
)
from unillm.providers.framing import Frame, SseFrame
from unillm.schemas import (
    CanonicalEvent,
    CanonicalRequest,
    ImagePart,
    Message,
    TextDelta,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

_STATUS_ERRORS = {
    "RESOURCE_EXHAUSTED": RateLimited,
    "UNAVAILABLE": ModelOverloaded,
    "UNAUTHENTICATED": AuthFailed,
    "PERMISSION_DENIED": AuthFailed,
}
_CONTEXT_MARKERS = ("exceeds the maximum number of tokens", "input token count")


def _parts(message: Message) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            if part.text:
                parts.append({"text": part.text})
        elif isinstance(part, ImagePart):
            if part.data is None:
                raise EncodingError("Google AI only accepts inline image data")
            parts.append({"inlineData": {"mimeType": part.media_type, "data": part.data}})
        elif isinstance(part, ToolCallPart):
            parts.append({"functionCall": {"name": part.name, "args": part.arguments}})
        elif isinstance(part, ToolResultPart):
            if not part.tool_name:
                raise EncodingError("Google AI tool results need the tool name")
            key = "error" if part.is_error else "content"
            parts.append({"functionResponse": {"name": part.tool_name, "response": {key: part.content}}})
    return parts


class GoogleDecoder(StreamDecoder):
    framing = "sse"

    def __init__(self, model: ResolvedModel) -> None:
        super().__init__(model)
        self._calls = 0
        self._usage: Optional[Dict[str, Any]] = None

    def decode_event(self, frame: Frame) -> List[CanonicalEvent]:
        data = frame.data if isinstance(frame, SseFrame) else frame
        if not data.strip():
            return []
        payload = self.parse_json(data)
        if not isinstance(payload, dict):
            return []
        if payload.get("error"):
            raise stream_error(payload["error"])

        events: List[CanonicalEvent] = []
        for candidate in payload.get("candidates") or []:
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                if part.get("text") and not part.get("thought"):
                    events.append(TextDelta(text=part["text"]))
                elif "functionCall" in part:
                    events.extend(self._function_call(part["functionCall"]))
            if candidate.get("finishReason"):
                self.stop_reason = candidate["finishReason"]

        usage = payload.get("usageMetadata")
        if isinstance(usage, dict) and "promptTokenCount" in usage:
            # counts are cumulative on every chunk; only the last one is reported
            self._usage = usage

        # Gemini has no terminal frame; the final chunk carries finishReason
        if self.stop_reason is not None:
            events.extend(self.end_stream(self.stop_reason))
        return events

    def end_stream(self, stop_reason: Optional[str]) -> List[CanonicalEvent]:
        # also reached on a clean close without finishReason
        events: List[CanonicalEvent] = []
        if self._usage is not None and not self.saw_usage:
            events.extend(self.usage(self._usage.get("promptTokenCount"), self._usage.get("candidatesTokenCount", 0)))
        events.extend(super().end_stream(stop_reason))
        return events

    def _function_call(self, call: Mapping[str, Any]) -> List[CanonicalEvent]:
        # Function calls arrive whole, so each one is a complete Start/Delta/End group
        index = self._calls
        self._calls += 1
        name = str(call.get("name") or "")
        call_id = str(call.get("id") or f"{name}-{index}")
        args = call.get("args") or {}
        events = self.tools.start(index, call_id, name)
        events.extend(self.tools.delta(index, _dumps(args)))
        events.extend(self.tools.end(index))
        return events


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def stream_error(error: Any) -> LLMError:
    if not isinstance(error, Mapping):
        return UnknownError(str(error))
    message = str(error.get("message") or "Google AI stream error")
    if any(marker in message for marker in _CONTEXT_MARKERS):
        return ContextLengthExceeded(message)
    cls = _STATUS_ERRORS.get(str(error.get("status")), UnknownError)
    return cls(message, status_code=error.get("code"), retry_after=_retry_delay(error))


def _retry_delay(error: Mapping[str, Any]) -> Optional[float]:
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and str(detail.get("@type", "")).endswith("RetryInfo"):
            return parse_duration(detail.get("retryDelay"))
    return None


class GoogleAICodec(WireCodec):
    provider_id = "google"
    display_name = "Google AI"
    decoder_class = GoogleDecoder

    def __init__(self, base_url: Optional[str] = None) -> None:
        super().__init__(base_url or settings.GOOGLE_AI_API_URL)

    def encode(self, request: CanonicalRequest, model: ResolvedModel) -> WireRequest:
        self.check_request(request)
        system: List[Dict[str, Any]] = []
        turns: List[Dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                system.extend(_parts(message))
                continue
            role = "model" if message.role == "assistant" else "user"
            parts = _parts(message)
            if not parts:
                raise EncodingError(f"message for role '{message.role}' has no encodable content")
            turns.append({"role": role, "parts": parts})
        turns = merge_consecutive(turns, key="parts")
        if not turns:
            raise EncodingError("no non-system messages supplied")

        body: Dict[str, Any] = {"contents": turns}
        if system:
            body["systemInstruction"] = {"parts": system}
        config: Dict[str, Any] = {}
        if request.temperature is not None:
            config["temperature"] = float(request.temperature)
        if request.max_tokens is not None:
            config["maxOutputTokens"] = request.max_tokens
        if request.stop:
            config["stopSequences"] = list(request.stop)
        if config:
            body["generationConfig"] = config
        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.input_schema}
                        for t in request.tools
                    ]
                }
            ]

        return WireRequest(
            provider_id=self.provider_id,
            model_id=model.id,
            url=f"{self.base_url}/v1beta/models/{model.id}:streamGenerateContent?alt=sse",
            headers={"Content-Type": "application/json"},
            body=body,
        )

    def auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {"x-goog-api-key": credential.secret}

    def is_context_length_error(self, status: int, body: str) -> bool:
        return status == 400 and any(marker in (body or "") for marker in _CONTEXT_MARKERS)

    def translate_error(self, status: int, headers: Mapping[str, str], body: str) -> LLMError:
        err = super().translate_error(status, headers, body)
        if "API_KEY_INVALID" in (body or "") or "API key not valid" in (body or ""):
            return AuthFailed(err.message, status_code=status, raw=err.raw)
        if err.retry_after is None and err.retriable:
            try:
                details = json.loads(body).get("error") or {}
                err.retry_after = _retry_delay(details)
            except (ValueError, AttributeError):
                pass
        return err
