"""
unillm: one streaming completion interface over several LLM backends.

    orchestrator = CompletionOrchestrator()
    await orchestrator.list_models("ollama")  # loads the local model list
    handle = orchestrator.complete(request, "ollama", "llama3", credentials)
    async for event in handle:
        ...
"""

from unillm.errors import ErrorKind, LLMError
from unillm.schemas import (
    CanonicalEvent,
    CanonicalRequest,
    CompletionResult,
    ImagePart,
    Message,
    StreamEnd,
    StreamError,
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
from unillm.services.credentials import EnvCredentials, StaticCredentials
from unillm.services.orchestrator import CompletionOptions, CompletionOrchestrator, RequestHandle, RequestState, collect

__all__ = [
    "CanonicalEvent",
    "CanonicalRequest",
    "CompletionOptions",
    "CompletionOrchestrator",
    "CompletionResult",
    "EnvCredentials",
    "ErrorKind",
    "ImagePart",
    "LLMError",
    "Message",
    "RequestHandle",
    "RequestState",
    "StaticCredentials",
    "StreamEnd",
    "StreamError",
    "TextDelta",
    "TextPart",
    "ToolCallArgumentDelta",
    "ToolCallEnd",
    "ToolCallPart",
    "ToolCallStart",
    "ToolResultPart",
    "ToolSpec",
    "UsageUpdate",
    "collect",
]
