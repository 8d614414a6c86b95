import json

import pytest

from conftest import LLAMA3, jsonl, sse
from unillm.errors import (
    AuthFailed,
    ContextLengthExceeded,
    DecodingError,
    EncodingError,
    ModelOverloaded,
    RateLimited,
    UnknownError,
)
from unillm.providers import (
    AnthropicCodec,
    CloudCodec,
    CopilotChatCodec,
    Credential,
    GoogleAICodec,
    OllamaCodec,
    OpenAICodec,
)
from unillm.schemas import (
    CanonicalRequest,
    ImagePart,
    Message,
    StreamEnd,
    TextDelta,
    TextPart,
    ToolCallArgumentDelta,
    ToolCallEnd,
    ToolCallPart,
    ToolCallStart,
    ToolResultPart,
    ToolSpec,
    UsageUpdate,
)
from unillm.services.registry import ProviderRegistry

REGISTRY = ProviderRegistry.build().with_models("ollama", [LLAMA3])


def resolved(provider_id, model_id):
    return REGISTRY.resolve(provider_id, model_id)


def decode(codec, model, body: bytes, chunk_size=None):
    decoder = codec.new_decoder(model)
    events = []
    step = chunk_size or len(body) or 1
    for i in range(0, len(body), step):
        events.extend(decoder.feed(body[i:i + step]))
    events.extend(decoder.finish())
    return events


def tool_conversation():
    return CanonicalRequest(
        messages=[
            Message(role="system", content="Be brief."),
            Message(role="user", content="What is x?"),
            Message(
                role="assistant",
                content=[
                    TextPart(text="Looking it up."),
                    ToolCallPart(id="call_1", name="lookup", arguments={"q": "x"}),
                ],
            ),
            Message(role="tool", content=[ToolResultPart(tool_call_id="call_1", tool_name="lookup", content="42")]),
            Message(role="user", content="Thanks"),
        ],
        tools=[ToolSpec(name="lookup", description="Look a value up")],
        temperature=0.2,
    )


ANTHROPIC_STREAM = (
    "event: message_start\n"
    'data: {"type":"message_start","message":{"usage":{"input_tokens":12,"output_tokens":1}}}\n\n'
    "event: content_block_start\n"
    'data: {"type":"content_block_start","index":0,"content_block":{"type":"text","text":""}}\n\n'
    "event: ping\n"
    'data: {"type":"ping"}\n\n'
    'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hél"}}\n\n'
    'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"lo"}}\n\n'
    'data: {"type":"content_block_stop","index":0}\n\n'
    'data: {"type":"content_block_start","index":1,"content_block":{"type":"tool_use","id":"toolu_1","name":"lookup","input":{}}}\n\n'
    'data: {"type":"content_block_delta","index":1,"delta":{"type":"input_json_delta","partial_json":"{\\"q\\":"}}\n\n'
    'data: {"type":"content_block_delta","index":1,"delta":{"type":"input_json_delta","partial_json":" \\"x\\"}"}}\n\n'
    'data: {"type":"content_block_stop","index":1}\n\n'
    'data: {"type":"message_delta","delta":{"stop_reason":"tool_use"},"usage":{"output_tokens":9}}\n\n'
    'data: {"type":"message_stop"}\n\n'
).encode()

ANTHROPIC_EVENTS = [
    TextDelta(text="Hél"),
    TextDelta(text="lo"),
    ToolCallStart(id="toolu_1", name="lookup"),
    ToolCallArgumentDelta(id="toolu_1", delta='{"q":'),
    ToolCallArgumentDelta(id="toolu_1", delta=' "x"}'),
    ToolCallEnd(id="toolu_1"),
    UsageUpdate(prompt_tokens=12, completion_tokens=9),
    StreamEnd(stop_reason="tool_use"),
]


class TestAnthropic:
    codec = AnthropicCodec(base_url="https://anthropic.test")
    model = resolved("anthropic", "claude-3-5-sonnet-latest")

    def test_encode_hoists_system_and_merges_turns(self):
        wire = self.codec.encode(tool_conversation(), self.model)
        assert wire.url == "https://anthropic.test/v1/messages"
        assert wire.headers["anthropic-version"] == "2023-06-01"
        body = wire.body
        assert body["system"] == "Be brief."
        assert body["max_tokens"] == 8192
        assert body["temperature"] == 0.2
        assert body["stream"] is True
        assert [t["role"] for t in body["messages"]] == ["user", "assistant", "user"]
        assert body["messages"][1]["content"][1] == {
            "type": "tool_use", "id": "call_1", "name": "lookup", "input": {"q": "x"},
        }
        assert body["messages"][2]["content"] == [
            {"type": "tool_result", "tool_use_id": "call_1", "content": "42"},
            {"type": "text", "text": "Thanks"},
        ]
        assert body["tools"][0]["name"] == "lookup"

    def test_authorize_uses_api_key_header(self):
        wire = self.codec.encode(tool_conversation(), self.model)
        authorized = self.codec.authorize(wire, Credential(secret="sk-ant"))
        assert authorized.headers["x-api-key"] == "sk-ant"
        assert "Authorization" not in authorized.headers

    def test_missing_credential(self):
        wire = self.codec.encode(tool_conversation(), self.model)
        with pytest.raises(AuthFailed):
            self.codec.authorize(wire, None)

    def test_decode_text_tool_call_and_usage(self):
        assert decode(self.codec, self.model, ANTHROPIC_STREAM) == ANTHROPIC_EVENTS

    def test_decode_is_independent_of_chunking(self):
        assert decode(self.codec, self.model, ANTHROPIC_STREAM, chunk_size=1) == ANTHROPIC_EVENTS

    def test_in_band_error(self):
        decoder = self.codec.new_decoder(self.model)
        with pytest.raises(ModelOverloaded):
            list(decoder.feed(sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})))

    def test_translate_error(self):
        assert isinstance(self.codec.translate_error(401, {}, ""), AuthFailed)
        limited = self.codec.translate_error(429, {"retry-after": "3"}, '{"error":{"message":"slow down"}}')
        assert isinstance(limited, RateLimited)
        assert limited.retry_after == 3.0
        assert limited.message == "slow down"
        too_long = self.codec.translate_error(
            400, {}, '{"error":{"type":"invalid_request_error","message":"prompt is too long: 210000 tokens"}}'
        )
        assert isinstance(too_long, ContextLengthExceeded)
        assert isinstance(self.codec.translate_error(529, {}, ""), ModelOverloaded)
        assert isinstance(self.codec.translate_error(418, {}, "teapot"), UnknownError)


class TestOpenAI:
    codec = OpenAICodec(base_url="https://openai.test")
    model = resolved("openai", "gpt-4o")

    def test_encode_messages(self):
        request = tool_conversation()
        request.messages.insert(
            1, Message(role="user", content=[TextPart(text="see"), ImagePart(media_type="image/png", data="AAAA")])
        )
        request.max_tokens = 100
        wire = self.codec.encode(request, self.model)
        assert wire.url == "https://openai.test/v1/chat/completions"
        body = wire.body
        assert body["max_completion_tokens"] == 100
        assert body["stream_options"] == {"include_usage": True}
        roles = [m["role"] for m in body["messages"]]
        assert roles == ["system", "user", "user", "assistant", "tool", "user"]
        assert body["messages"][1]["content"][1] == {
            "type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"},
        }
        call = body["messages"][3]["tool_calls"][0]
        assert call["id"] == "call_1"
        assert json.loads(call["function"]["arguments"]) == {"q": "x"}
        assert body["messages"][4] == {"role": "tool", "tool_call_id": "call_1", "content": "42"}
        assert body["tools"][0]["function"]["parameters"] == {"type": "object", "properties": {}}

    def test_bearer_auth(self):
        wire = self.codec.authorize(self.codec.encode(tool_conversation(), self.model), Credential(secret="sk-oa"))
        assert wire.headers["Authorization"] == "Bearer sk-oa"

    def test_decode_serializes_parallel_tool_calls(self):
        def chunk(delta=None, finish=None):
            return {"choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish}]}

        body = sse(
            chunk({"role": "assistant", "content": "Sure"}),
            chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "a", "arguments": ""}}]}),
            chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "b", "arguments": ""}}]}),
            chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"x":'}}]}),
            chunk({"tool_calls": [{"index": 1, "function": {"arguments": '{"y":2}'}}]}),
            chunk({"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}),
            chunk(finish="tool_calls"),
            {"choices": [], "usage": {"prompt_tokens": 20, "completion_tokens": 11}},
            "[DONE]",
        )
        assert decode(self.codec, self.model, body) == [
            TextDelta(text="Sure"),
            ToolCallStart(id="call_a", name="a"),
            ToolCallArgumentDelta(id="call_a", delta='{"x":'),
            ToolCallArgumentDelta(id="call_a", delta="1}"),
            ToolCallEnd(id="call_a"),
            ToolCallStart(id="call_b", name="b"),
            ToolCallArgumentDelta(id="call_b", delta='{"y":2}'),
            ToolCallEnd(id="call_b"),
            UsageUpdate(prompt_tokens=20, completion_tokens=11),
            StreamEnd(stop_reason="tool_calls"),
        ]

    def test_in_band_error(self):
        decoder = self.codec.new_decoder(self.model)
        with pytest.raises(ContextLengthExceeded):
            list(decoder.feed(sse({"error": {"message": "too long", "code": "context_length_exceeded"}})))

    def test_context_length_status(self):
        err = self.codec.translate_error(
            400, {}, '{"error":{"message":"This model\'s maximum context length is 128000 tokens"}}'
        )
        assert isinstance(err, ContextLengthExceeded)


class TestCopilotChat:
    codec = CopilotChatCodec(base_url="https://copilot.test", editor_version="unillm/test")
    model = resolved("copilot_chat", "gpt-4o")

    def test_encode_uses_copilot_dialect(self):
        request = CanonicalRequest(messages=[Message(role="user", content="hi")], max_tokens=50)
        wire = self.codec.encode(request, self.model)
        assert wire.url == "https://copilot.test/chat/completions"
        assert wire.headers["Editor-Version"] == "unillm/test"
        assert wire.headers["Copilot-Integration-Id"] == "vscode-chat"
        assert wire.body["max_tokens"] == 50
        assert "stream_options" not in wire.body
        assert wire.body["messages"] == [{"role": "user", "content": "hi"}]


class TestGoogle:
    codec = GoogleAICodec(base_url="https://google.test")
    model = resolved("google", "gemini-1.5-pro")

    def test_encode(self):
        wire = self.codec.encode(tool_conversation(), self.model)
        assert wire.url == "https://google.test/v1beta/models/gemini-1.5-pro:streamGenerateContent?alt=sse"
        body = wire.body
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert [t["role"] for t in body["contents"]] == ["user", "model", "user"]
        assert body["contents"][1]["parts"][1] == {"functionCall": {"name": "lookup", "args": {"q": "x"}}}
        assert body["contents"][2]["parts"][0] == {
            "functionResponse": {"name": "lookup", "response": {"content": "42"}},
        }
        assert body["generationConfig"] == {"temperature": 0.2}
        assert body["tools"][0]["functionDeclarations"][0]["name"] == "lookup"

    def test_api_key_header(self):
        wire = self.codec.authorize(self.codec.encode(tool_conversation(), self.model), Credential(secret="g-key"))
        assert wire.headers["x-goog-api-key"] == "g-key"

    def test_tool_result_needs_name(self):
        request = CanonicalRequest(
            messages=[
                Message(role="user", content="x"),
                Message(role="tool", content=[ToolResultPart(tool_call_id="c", content="1")]),
            ]
        )
        with pytest.raises(EncodingError):
            self.codec.encode(request, self.model)

    def test_decode_text_function_call_and_final_usage(self):
        body = sse(
            {
                "candidates": [{"content": {"role": "model", "parts": [{"text": "Hi"}]}}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
            },
            {
                "candidates": [
                    {
                        "content": {"role": "model", "parts": [{"functionCall": {"name": "lookup", "args": {"q": "x"}}}]},
                        "finishReason": "STOP",
                    }
                ],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 7},
            },
        )
        assert decode(self.codec, self.model, body) == [
            TextDelta(text="Hi"),
            ToolCallStart(id="lookup-0", name="lookup"),
            ToolCallArgumentDelta(id="lookup-0", delta='{"q": "x"}'),
            ToolCallEnd(id="lookup-0"),
            UsageUpdate(prompt_tokens=4, completion_tokens=7),
            StreamEnd(stop_reason="STOP"),
        ]

    def test_usage_kept_when_stream_closes_without_finish_reason(self):
        body = sse(
            {
                "candidates": [{"content": {"role": "model", "parts": [{"text": "Hi"}]}}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
            },
        )
        assert decode(self.codec, self.model, body) == [
            TextDelta(text="Hi"),
            UsageUpdate(prompt_tokens=4, completion_tokens=1),
            StreamEnd(stop_reason=None),
        ]

    def test_retry_delay_from_error_body(self):
        body = json.dumps(
            {
                "error": {
                    "code": 429,
                    "status": "RESOURCE_EXHAUSTED",
                    "message": "quota",
                    "details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "7s"}],
                }
            }
        )
        err = self.codec.translate_error(429, {}, body)
        assert isinstance(err, RateLimited)
        assert err.retry_after == 7.0

    def test_invalid_key_is_auth_failure(self):
        err = self.codec.translate_error(400, {}, '{"error":{"message":"API key not valid. Please pass a valid API key."}}')
        assert isinstance(err, AuthFailed)


class TestOllama:
    codec = OllamaCodec(base_url="http://ollama.test")
    model = resolved("ollama", "llama3")

    def test_encode(self):
        request = tool_conversation()
        request.messages[1] = Message(role="user", content=[TextPart(text="look"), ImagePart(data="AAAA")])
        wire = self.codec.encode(request, self.model)
        assert wire.url == "http://ollama.test/api/chat"
        body = wire.body
        assert body["options"] == {"num_ctx": 8192, "temperature": 0.2}
        assert body["messages"][1] == {"role": "user", "content": "look", "images": ["AAAA"]}
        assert body["messages"][2]["tool_calls"] == [{"function": {"name": "lookup", "arguments": {"q": "x"}}}]
        assert body["messages"][3] == {"role": "tool", "content": "42", "tool_name": "lookup"}

    def test_no_credential_needed(self):
        wire = self.codec.encode(tool_conversation(), self.model)
        assert self.codec.authorize(wire, None) == wire

    def test_decode_whole_tool_call(self):
        body = jsonl(
            {"message": {"role": "assistant", "content": "", "tool_calls": [
                {"function": {"name": "lookup", "arguments": {"q": "x"}}}
            ]}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop",
             "prompt_eval_count": 30, "eval_count": 12},
        )
        assert decode(self.codec, self.model, body) == [
            ToolCallStart(id="lookup-0", name="lookup"),
            ToolCallArgumentDelta(id="lookup-0", delta='{"q": "x"}'),
            ToolCallEnd(id="lookup-0"),
            UsageUpdate(prompt_tokens=30, completion_tokens=12),
            StreamEnd(stop_reason="stop"),
        ]

    def test_bad_frame_after_good_frame_in_one_read(self):
        decoder = self.codec.new_decoder(self.model)
        delivered = []
        with pytest.raises(DecodingError):
            for event in decoder.feed(b'{"message":{"content":"4"},"done":false}\n{not json\n'):
                delivered.append(event)
        assert delivered == [TextDelta(text="4")]

    def test_parse_models(self):
        models = self.codec.parse_models(
            {"models": [{"name": "qwen2.5:7b"}, {"name": "llama3.1:8b"}, {"name": "llava:13b"}]}
        )
        assert [m.id for m in models] == ["llama3.1:8b", "llava:13b", "qwen2.5:7b"]
        llama, llava, qwen = models
        assert llama.supports_tools and llama.max_context_tokens == 128000
        assert llava.supports_images and not llava.supports_tools
        assert qwen.max_context_tokens == 32768


class TestCloud:
    codec = CloudCodec(base_url="https://cloud.test")
    model = resolved("cloud", "claude-3-5-sonnet-latest")

    def test_encode_wraps_provider_request(self):
        wire = self.codec.encode(tool_conversation(), self.model)
        assert wire.url == "https://cloud.test/completion"
        assert wire.body["provider"] == "anthropic"
        assert wire.body["model"] == "claude-3-5-sonnet-latest"
        assert wire.body["provider_request"]["system"] == "Be brief."

    def test_decode_json_lines(self):
        body = jsonl(
            {"type": "message_start", "message": {"usage": {"input_tokens": 3}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 1}},
            {"type": "message_stop"},
        )
        assert decode(self.codec, self.model, body) == [
            TextDelta(text="ok"),
            UsageUpdate(prompt_tokens=3, completion_tokens=1),
            StreamEnd(stop_reason="end_turn"),
        ]

    def test_expired_token_header(self):
        err = self.codec.check_headers(401, {"X-LLM-Token-Expired": "true"})
        assert isinstance(err, AuthFailed)
        assert err.token_expired
        assert self.codec.check_headers(200, {"x-llm-token-expired": "true"}) is None
        assert self.codec.check_headers(403, {"x-llm-monthly-spend-reached": "true"}) is None
