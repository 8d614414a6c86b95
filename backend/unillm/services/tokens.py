import json
import math
from typing import Any, Callable, Dict, Optional

import structlog
import tiktoken

from unillm.schemas import CanonicalRequest, ImagePart, TextPart, ToolCallPart, ToolResultPart, UsageUpdate

logger = structlog.get_logger()

FALLBACK_ENCODING = "cl100k_base"
CHARS_PER_TOKEN = 4
# Chat framing overhead, as counted for OpenAI chat models
TOKENS_PER_MESSAGE = 3
TOKENS_PER_REPLY = 3
TOKENS_PER_IMAGE = 85


def load_encoding(model_id: str) -> Any:
    try:
        return tiktoken.encoding_for_model(model_id)
    except KeyError:
        return tiktoken.get_encoding(FALLBACK_ENCODING)


class TokenAccountant:
    """
    Local token estimates for backends that do not report usage in-band.

    Counts are approximate for non-OpenAI models; they exist so callers
    always get a UsageUpdate, not for billing.
    """

    def __init__(self, encoding_loader: Optional[Callable[[str], Any]] = None) -> None:
        self._loader = encoding_loader or load_encoding
        self._encodings: Dict[str, Any] = {}

    def encoding_for(self, model_id: str) -> Any:
        if model_id in self._encodings:
            return self._encodings[model_id]
        try:
            encoding = self._loader(model_id)
        except Exception as exc:
            # encoding files may be unavailable offline; fall back to a character ratio
            logger.warning("tokenizer_unavailable", model=model_id, err=str(exc))
            encoding = None
        self._encodings[model_id] = encoding
        return encoding

    def count_text(self, text: str, model_id: str) -> int:
        if not text:
            return 0
        encoding = self.encoding_for(model_id)
        if encoding is None:
            return math.ceil(len(text) / CHARS_PER_TOKEN)
        return len(encoding.encode(text, disallowed_special=()))

    def count_request(self, request: CanonicalRequest, model_id: str) -> int:
        total = TOKENS_PER_REPLY
        for message in request.messages:
            total += TOKENS_PER_MESSAGE + self.count_text(message.role, model_id)
            for part in message.content:
                if isinstance(part, TextPart):
                    total += self.count_text(part.text, model_id)
                elif isinstance(part, ImagePart):
                    total += TOKENS_PER_IMAGE
                elif isinstance(part, ToolCallPart):
                    total += self.count_text(part.name, model_id)
                    total += self.count_text(json.dumps(part.arguments), model_id)
                elif isinstance(part, ToolResultPart):
                    total += self.count_text(part.content, model_id)
        for tool in request.tools:
            total += self.count_text(tool.name, model_id)
            total += self.count_text(tool.description, model_id)
            total += self.count_text(json.dumps(tool.input_schema), model_id)
        return total

    def estimate(self, request: CanonicalRequest, model_id: str, completion_text: str) -> UsageUpdate:
        return UsageUpdate(
            prompt_tokens=self.count_request(request, model_id),
            completion_tokens=self.count_text(completion_text, model_id),
            estimated=True,
        )
