from typing import Optional

from unillm.core.config import settings
from unillm.providers.base import ResolvedModel, WireRequest
from unillm.providers.openai_provider import OpenAICodec
from unillm.schemas import CanonicalRequest


class CopilotChatCodec(OpenAICodec):
    """
    GitHub Copilot Chat speaks the OpenAI chat-completions dialect. It wants a
    short-lived Copilot API token (see CopilotCredentialSource) rather than
    the GitHub OAuth token, plus editor identification headers.
    """

    provider_id = "copilot_chat"
    display_name = "GitHub Copilot Chat"
    chat_path = "/chat/completions"
    max_tokens_field = "max_tokens"
    include_usage = False

    def __init__(self, base_url: Optional[str] = None, editor_version: Optional[str] = None) -> None:
        super().__init__(base_url or settings.COPILOT_CHAT_API_URL)
        self.editor_version = editor_version or settings.COPILOT_EDITOR_VERSION

    def encode(self, request: CanonicalRequest, model: ResolvedModel) -> WireRequest:
        wire = super().encode(request, model)
        return wire.with_headers(
            {
                "Editor-Version": self.editor_version,
                "Copilot-Integration-Id": "vscode-chat",
            }
        )
