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

DEFAULT_MAX_TOKENS = 4096

# error.type values sent in-band and in error bodies
_ERROR_TYPES = {
    "rate_limit_error": RateLimited,
    "overloaded_error": ModelOverloaded,
    "authentication_error": AuthFailed,
    "permission_error": AuthFailed,
}


def content_blocks(message: Message) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            if part.text:
                blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            if part.data is not None:
                source = {"type": "base64", "media_type": part.media_type, "data": part.data}
            else:
                source = {"type": "url", "url": part.url}
            blocks.append({"type": "image", "source": source})
        elif isinstance(part, ToolCallPart):
            blocks.append({"type": "tool_use", "id": part.id, "name": part.name, "input": part.arguments})
        elif isinstance(part, ToolResultPart):
            block: Dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.tool_call_id,
                "content": part.content,
            }
            if part.is_error:
                block["is_error"] = True
            blocks.append(block)
    return blocks


def anthropic_body(request: CanonicalRequest, model: ResolvedModel) -> Dict[str, Any]:
    """
    Build a Messages API body.

    System messages are hoisted into `system` (joined by blank lines), `tool`
    messages become `user` turns of tool_result blocks, and consecutive turns
    with the same role are merged because the API requires alternation.
    """
    system_segments: List[str] = []
    turns: List[Dict[str, Any]] = []
    for message in request.messages:
        if message.role == "system":
            text = message.text().strip()
            if text:
                system_segments.append(text)
            continue
        if message.role == "tool" and not all(isinstance(p, ToolResultPart) for p in message.content):
            raise EncodingError("tool messages may only carry tool results")
        role = "assistant" if message.role == "assistant" else "user"
        blocks = content_blocks(message)
        if not blocks:
            raise EncodingError(f"message for role '{message.role}' has no encodable content")
        turns.append({"role": role, "content": blocks})

    turns = merge_consecutive(turns)
    if not turns:
        raise EncodingError("no non-system messages supplied")

    body: Dict[str, Any] = {
        "model": model.id,
        "messages": turns,
        "max_tokens": request.max_tokens or model.model.max_output_tokens or DEFAULT_MAX_TOKENS,
        "stream": True,
    }
    if system_segments:
        body["system"] = "\n\n".join(system_segments)
    if request.tools:
        body["tools"] = [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema}
            for t in request.tools
        ]
    if request.temperature is not None:
        body["temperature"] = float(request.temperature)
    if request.stop:
        body["stop_sequences"] = list(request.stop)
    return body


class AnthropicDecoder(StreamDecoder):
    framing = "sse"

    def __init__(self, model: ResolvedModel) -> None:
        super().__init__(model)
        self._input_tokens: Optional[int] = None

    def decode_event(self, frame: Frame) -> List[CanonicalEvent]:
        data = frame.data if isinstance(frame, SseFrame) else frame
        if not data.strip():
            return []
        payload = self.parse_json(data)
        if not isinstance(payload, dict):
            return []
        return self.decode_payload(payload)

    def decode_payload(self, payload: Mapping[str, Any]) -> List[CanonicalEvent]:
        kind = payload.get("type")
        if kind == "message_start":
            usage = (payload.get("message") or {}).get("usage") or {}
            self._input_tokens = usage.get("input_tokens")
            return []
        if kind == "content_block_start":
            index = payload.get("index")
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                return self.tools.start(index, str(block.get("id") or f"toolu_{index}"), str(block.get("name") or ""))
            if block.get("type") == "text" and block.get("text"):
                return [TextDelta(text=block["text"])]
            return []
        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta":
                text = delta.get("text") or ""
                return [TextDelta(text=text)] if text else []
            if delta.get("type") == "input_json_delta":
                return self.tools.delta(payload.get("index"), delta.get("partial_json") or "")
            return []
        if kind == "content_block_stop":
            return self.tools.end(payload.get("index"))
        if kind == "message_delta":
            delta = payload.get("delta") or {}
            if delta.get("stop_reason"):
                self.stop_reason = delta["stop_reason"]
            usage = payload.get("usage") or {}
            if "output_tokens" in usage:
                prompt = usage.get("input_tokens", self._input_tokens)
                return self.usage(prompt, usage.get("output_tokens"))
            return []
        if kind == "message_stop":
            return self.end_stream(self.stop_reason)
        if kind == "error":
            raise stream_error(payload.get("error") or {})
        # ping and unknown event types
        return []


def stream_error(error: Mapping[str, Any]) -> LLMError:
    message = str(error.get("message") or "Anthropic stream error")
    if "prompt is too long" in message:
        return ContextLengthExceeded(message)
    cls = _ERROR_TYPES.get(str(error.get("type")), UnknownError)
    return cls(message)


class AnthropicCodec(WireCodec):
    provider_id = "anthropic"
    display_name = "Anthropic"
    decoder_class = AnthropicDecoder

    def __init__(self, base_url: Optional[str] = None, api_version: Optional[str] = None) -> None:
        super().__init__(base_url or settings.ANTHROPIC_API_URL)
        self.api_version = api_version or settings.ANTHROPIC_API_VERSION

    def encode(self, request: CanonicalRequest, model: ResolvedModel) -> WireRequest:
        self.check_request(request)
        return WireRequest(
            provider_id=self.provider_id,
            model_id=model.id,
            url=f"{self.base_url}/v1/messages",
            headers={
                "content-type": "application/json",
                "accept": "text/event-stream",
                "anthropic-version": self.api_version,
            },
            body=anthropic_body(request, model),
        )

    def auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {"x-api-key": credential.secret}

    def is_context_length_error(self, status: int, body: str) -> bool:
        return status == 400 and "prompt is too long" in (body or "")

    def translate_error(self, status: int, headers: Mapping[str, str], body: str) -> LLMError:
        err = super().translate_error(status, headers, body)
        if status == 400 and "overloaded_error" in (body or ""):
            return ModelOverloaded(err.message, status_code=status, raw=err.raw)
        return err
