import asyncio
import json
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from unillm.providers import ModelInfo
from unillm.services.orchestrator import CompletionOptions, CompletionOrchestrator
from unillm.services.registry import ProviderRegistry, RegistryRef
from unillm.services.tokens import TokenAccountant
from unillm.services.transport import HttpTransport
from unillm.utils.rate_limit import reset_limiters

LLAMA3 = ModelInfo(id="llama3", display_name="llama3", max_context_tokens=8192)


class ScriptedStream(httpx.AsyncByteStream):
    """Response body delivered chunk by chunk; optionally never finishes."""

    def __init__(self, chunks: Iterable[bytes], hang: bool = False) -> None:
        self.chunks = list(chunks)
        self.hang = hang
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
            await asyncio.sleep(0)
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class MockBackend:
    """Plays back one scripted response per request and records what was sent."""

    def __init__(self) -> None:
        self.responses: List[Callable[[httpx.Request], httpx.Response]] = []
        self.requests: List[httpx.Request] = []
        self.streams: List[ScriptedStream] = []

    def reply(
        self,
        chunks: Iterable[bytes] = (),
        *,
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
        hang: bool = False,
    ) -> "MockBackend":
        def respond(request: httpx.Request) -> httpx.Response:
            stream = ScriptedStream(chunks, hang=hang)
            self.streams.append(stream)
            return httpx.Response(status, headers=headers or {}, stream=stream)

        self.responses.append(respond)
        return self

    def fail(self, exc: Exception) -> "MockBackend":
        def respond(request: httpx.Request) -> httpx.Response:
            raise exc

        self.responses.append(respond)
        return self

    def reply_json(self, payload: Any, *, status: int = 200, headers: Optional[Dict[str, str]] = None) -> "MockBackend":
        body = json.dumps(payload).encode()
        return self.reply([body], status=status, headers={"content-type": "application/json", **(headers or {})})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"unexpected request {request.method} {request.url}")
        return self.responses.pop(0)(request)

    def body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


def sse(*payloads: Any) -> bytes:
    out = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode()


def jsonl(*payloads: Any) -> bytes:
    return "".join(json.dumps(p) + "\n" for p in payloads).encode()


class WordEncoding:
    """Offline stand-in for a tiktoken encoding: one token per word."""

    def encode(self, text: str, disallowed_special=()) -> List[str]:
        return text.split()


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    def record(self, event) -> None:
        self.events.append(event)

    @property
    def names(self) -> List[str]:
        return [e.name for e in self.events]


def build_orchestrator(
    backend: MockBackend,
    *,
    sleep: Optional[Callable] = None,
    telemetry=None,
    options: Optional[CompletionOptions] = None,
) -> CompletionOrchestrator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    registry = ProviderRegistry.build().with_models("ollama", [LLAMA3])
    return CompletionOrchestrator(
        RegistryRef(registry),
        HttpTransport(client=client),
        accountant=TokenAccountant(encoding_loader=lambda model_id: WordEncoding()),
        telemetry=telemetry,
        options=options or CompletionOptions(max_attempts=4, initial_backoff=0.01, max_backoff=0.05, cancel_grace=1.0),
        sleep=sleep or SleepRecorder(),
    )


@pytest.fixture
def backend() -> MockBackend:
    return MockBackend()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture(autouse=True)
def _fresh_limiters():
    reset_limiters()
    yield
    reset_limiters()
