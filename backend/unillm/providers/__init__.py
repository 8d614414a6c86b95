"""
Wire codecs, one per backend. Adding a backend means adding a codec here and
a catalog entry in the registry; the orchestrator never changes.
"""

from .anthropic_provider import AnthropicCodec
from .base import Credential, ModelInfo, ResolvedModel, StreamDecoder, WireCodec, WireRequest
from .cloud_provider import CloudCodec
from .copilot_provider import CopilotChatCodec
from .google_provider import GoogleAICodec
from .ollama_provider import OllamaCodec
from .openai_provider import OpenAICodec

__all__ = [
    "AnthropicCodec",
    "CloudCodec",
    "CopilotChatCodec",
    "Credential",
    "GoogleAICodec",
    "ModelInfo",
    "OllamaCodec",
    "OpenAICodec",
    "ResolvedModel",
    "StreamDecoder",
    "WireCodec",
    "WireRequest",
]
