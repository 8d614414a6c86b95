import json
from typing import Any, Dict, List, Mapping, Optional

from unillm.core.config import settings
from unillm.errors import ContextLengthExceeded, EncodingError, LLMError, UnknownError
from unillm.providers.base import ModelInfo, ResolvedModel, StreamDecoder, WireCodec, WireRequest
from unillm.providers.framing import Frame
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

# Context window by model family; Ollama's tags endpoint does not report it
_FAMILY_CONTEXT = (
    ("llama3.3", 128000),
    ("llama3.2", 128000),
    ("llama3.1", 128000),
    ("llama3", 8192),
    ("qwen2.5", 32768),
    ("qwen3", 40960),
    ("mistral", 32768),
    ("mixtral", 32768),
    ("gemma3", 128000),
    ("gemma2", 8192),
    ("phi4", 16384),
    ("phi3", 4096),
    ("deepseek-r1", 128000),
    ("codellama", 16384),
)
_TOOL_FAMILIES = ("llama3.1", "llama3.2", "llama3.3", "qwen2.5", "qwen3", "mistral", "mixtral", "command-r")
_VISION_FAMILIES = ("llava", "llama3.2-vision", "gemma3", "minicpm-v", "moondream")


def context_length_for(name: str, default: int) -> int:
    base = name.split(":", 1)[0].lower()
    for family, size in _FAMILY_CONTEXT:
        if base.startswith(family):
            return size
    return default


def model_from_tag(entry: Mapping[str, Any], default_context: int) -> ModelInfo:
    name = str(entry.get("name") or entry.get("model"))
    base = name.split(":", 1)[0].lower()
    return ModelInfo(
        id=name,
        display_name=name,
        max_context_tokens=context_length_for(name, default_context),
        supports_tools=base.startswith(_TOOL_FAMILIES),
        supports_images=base.startswith(_VISION_FAMILIES),
    )


class OllamaDecoder(StreamDecoder):
    framing = "jsonl"

    def __init__(self, model: ResolvedModel) -> None:
        super().__init__(model)
        self._calls = 0

    def decode_event(self, frame: Frame) -> List[CanonicalEvent]:
        line = frame if isinstance(frame, str) else frame.data
        payload = self.parse_json(line)
        if not isinstance(payload, dict):
            return []
        if payload.get("error"):
            raise stream_error(str(payload["error"]))

        events: List[CanonicalEvent] = []
        message = payload.get("message") or {}
        if message.get("content"):
            events.append(TextDelta(text=message["content"]))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            index = self._calls
            self._calls += 1
            name = str(function.get("name") or "")
            arguments = function.get("arguments") or {}
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments, ensure_ascii=False)
            events.extend(self.tools.start(index, str(call.get("id") or f"{name}-{index}"), name))
            events.extend(self.tools.delta(index, arguments))
            events.extend(self.tools.end(index))

        if payload.get("done"):
            events.extend(self.usage(payload.get("prompt_eval_count"), payload.get("eval_count")))
            events.extend(self.end_stream(payload.get("done_reason") or "stop"))
        return events


def stream_error(message: str) -> LLMError:
    if "context" in message and "exceed" in message:
        return ContextLengthExceeded(message)
    return UnknownError(message)


class OllamaCodec(WireCodec):
    provider_id = "ollama"
    display_name = "Ollama"
    requires_credential = False
    decoder_class = OllamaDecoder

    def __init__(self, base_url: Optional[str] = None, default_context: Optional[int] = None) -> None:
        super().__init__(base_url or settings.OLLAMA_API_URL)
        self.default_context = default_context or settings.OLLAMA_DEFAULT_CONTEXT

    def _message(self, message: Message) -> List[Dict[str, Any]]:
        if message.role == "tool" or any(isinstance(p, ToolResultPart) for p in message.content):
            out = []
            for part in message.content:
                if not isinstance(part, ToolResultPart):
                    raise EncodingError("tool results cannot be mixed with other content for Ollama")
                result = {"role": "tool", "content": part.content}
                if part.tool_name:
                    result["tool_name"] = part.tool_name
                out.append(result)
            return out

        entry: Dict[str, Any] = {"role": message.role, "content": ""}
        images: List[str] = []
        calls: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                entry["content"] += part.text
            elif isinstance(part, ImagePart):
                if part.data is None:
                    raise EncodingError("Ollama only accepts inline image data")
                images.append(part.data)
            elif isinstance(part, ToolCallPart):
                calls.append({"function": {"name": part.name, "arguments": part.arguments}})
        if images:
            entry["images"] = images
        if calls:
            entry["tool_calls"] = calls
        return [entry]

    def encode(self, request: CanonicalRequest, model: ResolvedModel) -> WireRequest:
        self.check_request(request)
        messages: List[Dict[str, Any]] = []
        for m in request.messages:
            messages.extend(self._message(m))

        options: Dict[str, Any] = {"num_ctx": model.model.max_context_tokens}
        if request.temperature is not None:
            options["temperature"] = float(request.temperature)
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if request.stop:
            options["stop"] = list(request.stop)

        body: Dict[str, Any] = {
            "model": model.id,
            "messages": messages,
            "stream": True,
            "options": options,
        }
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
                }
                for t in request.tools
            ]
        return WireRequest(
            provider_id=self.provider_id,
            model_id=model.id,
            url=f"{self.base_url}/api/chat",
            headers={"Content-Type": "application/json"},
            body=body,
        )

    def models_url(self) -> Optional[str]:
        return f"{self.base_url}/api/tags"

    def parse_models(self, payload: Any) -> List[ModelInfo]:
        entries = payload.get("models") if isinstance(payload, dict) else None
        models = [model_from_tag(e, self.default_context) for e in entries or [] if isinstance(e, dict)]
        return sorted(models, key=lambda m: m.id)

    def is_context_length_error(self, status: int, body: str) -> bool:
        text = (body or "").lower()
        return status == 400 and "context" in text and "exceed" in text
