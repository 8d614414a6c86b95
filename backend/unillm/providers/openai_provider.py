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
)
from unillm.providers.base import ResolvedModel, StreamDecoder, WireCodec, WireRequest
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

_CONTEXT_MARKERS = ("context_length_exceeded", "maximum context length")


def image_url(part: ImagePart) -> str:
    if part.url is not None:
        return part.url
    return f"data:{part.media_type};base64,{part.data}"


class OpenAIDecoder(StreamDecoder):
    framing = "sse"

    def decode_event(self, frame: Frame) -> List[CanonicalEvent]:
        data = (frame.data if isinstance(frame, SseFrame) else frame).strip()
        if not data:
            return []
        if data == "[DONE]":
            return self.end_stream(self.stop_reason)
        chunk = self.parse_json(data)
        if not isinstance(chunk, dict):
            return []
        if chunk.get("error"):
            raise stream_error(chunk["error"])

        events: List[CanonicalEvent] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if content:
                events.append(TextDelta(text=content))
            for call in delta.get("tool_calls") or []:
                index = call.get("index", 0)
                function = call.get("function") or {}
                if not self.tools.is_open(index) and call.get("id"):
                    events.extend(self.tools.start(index, str(call["id"]), str(function.get("name") or "")))
                if function.get("arguments"):
                    events.extend(self.tools.delta(index, function["arguments"]))
            if choice.get("finish_reason"):
                self.stop_reason = choice["finish_reason"]
                events.extend(self.tools.end_all())

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            events.extend(self.usage(usage.get("prompt_tokens"), usage.get("completion_tokens")))
        return events


def stream_error(error: Any) -> LLMError:
    if not isinstance(error, Mapping):
        return UnknownError(str(error))
    message = str(error.get("message") or "OpenAI stream error")
    code = str(error.get("code") or error.get("type") or "")
    if code == "context_length_exceeded":
        return ContextLengthExceeded(message)
    if code in ("rate_limit_exceeded", "insufficient_quota"):
        return RateLimited(message)
    if code in ("server_error", "overloaded"):
        return ModelOverloaded(message)
    if code == "invalid_api_key":
        return AuthFailed(message)
    return UnknownError(message)


class OpenAICodec(WireCodec):
    provider_id = "openai"
    display_name = "OpenAI"
    decoder_class = OpenAIDecoder
    chat_path = "/v1/chat/completions"
    max_tokens_field = "max_completion_tokens"
    include_usage = True

    def __init__(self, base_url: Optional[str] = None) -> None:
        super().__init__(base_url or settings.OPENAI_API_URL)

    def _to_openai_messages(self, req: CanonicalRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for m in req.messages:
            messages.extend(self._convert(m))
        return messages

    def _convert(self, message: Message) -> List[Dict[str, Any]]:
        # Tool results always become standalone `tool` messages, in order
        results = [p for p in message.content if isinstance(p, ToolResultPart)]
        rest = [p for p in message.content if not isinstance(p, ToolResultPart)]
        if message.role == "tool" and rest:
            raise EncodingError("tool messages may only carry tool results")

        converted: List[Dict[str, Any]] = []
        if message.role == "system":
            converted.append({"role": "system", "content": message.text()})
        elif message.role == "assistant":
            text = "".join(p.text for p in rest if isinstance(p, TextPart))
            calls = [p for p in rest if isinstance(p, ToolCallPart)]
            if any(isinstance(p, ImagePart) for p in rest):
                raise EncodingError("assistant messages cannot carry images")
            entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                    }
                    for c in calls
                ]
            converted.append(entry)
        elif rest:
            converted.append({"role": "user", "content": self._user_content(rest)})

        for result in results:
            converted.append({"role": "tool", "tool_call_id": result.tool_call_id, "content": result.content})
        return converted

    def _user_content(self, parts: List[Any]) -> Any:
        if all(isinstance(p, TextPart) for p in parts):
            return "".join(p.text for p in parts)
        content: List[Dict[str, Any]] = []
        for part in parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append({"type": "image_url", "image_url": {"url": image_url(part)}})
            else:
                raise EncodingError("user messages cannot carry tool call requests")
        return content

    def build_body(self, request: CanonicalRequest, model: ResolvedModel) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model.id,
            "messages": self._to_openai_messages(request),
            "stream": True,
        }
        if self.include_usage:
            body["stream_options"] = {"include_usage": True}
        if request.temperature is not None:
            body["temperature"] = float(request.temperature)
        if request.max_tokens is not None:
            body[self.max_tokens_field] = request.max_tokens
        if request.stop:
            body["stop"] = list(request.stop)
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in request.tools
            ]
        return body

    def encode(self, request: CanonicalRequest, model: ResolvedModel) -> WireRequest:
        self.check_request(request)
        return WireRequest(
            provider_id=self.provider_id,
            model_id=model.id,
            url=f"{self.base_url}{self.chat_path}",
            headers={"Content-Type": "application/json", "Accept": "text/event-stream"},
            body=self.build_body(request, model),
        )

    def is_context_length_error(self, status: int, body: str) -> bool:
        return status == 400 and any(marker in (body or "") for marker in _CONTEXT_MARKERS)
