"""
Hosted completion proxy.

The proxy takes `{provider, model, provider_request}` and relays the
upstream Anthropic event stream back as JSON lines. It is authenticated by a
short-lived LLM token; when the proxy flags the token as expired the
orchestrator refreshes the credential once and re-sends.
"""
from typing import Mapping, Optional

import structlog

from unillm.core.config import settings
from unillm.errors import AuthFailed, LLMError
from unillm.providers.anthropic_provider import AnthropicDecoder, anthropic_body
from unillm.providers.base import ResolvedModel, WireCodec, WireRequest
from unillm.schemas import CanonicalRequest

logger = structlog.get_logger()


class CloudDecoder(AnthropicDecoder):
    framing = "jsonl"


class CloudCodec(WireCodec):
    provider_id = "cloud"
    display_name = "Hosted LLM proxy"
    decoder_class = CloudDecoder
    upstream_provider = "anthropic"

    def __init__(
        self,
        base_url: Optional[str] = None,
        expired_token_header: Optional[str] = None,
        max_spend_header: Optional[str] = None,
    ) -> None:
        super().__init__(base_url or settings.CLOUD_API_URL)
        self.expired_token_header = (expired_token_header or settings.CLOUD_EXPIRED_TOKEN_HEADER).lower()
        self.max_spend_header = (max_spend_header or settings.CLOUD_MAX_SPEND_HEADER).lower()

    def encode(self, request: CanonicalRequest, model: ResolvedModel) -> WireRequest:
        self.check_request(request)
        return WireRequest(
            provider_id=self.provider_id,
            model_id=model.id,
            url=f"{self.base_url}/completion",
            headers={"Content-Type": "application/json"},
            body={
                "provider": self.upstream_provider,
                "model": model.id,
                "provider_request": anthropic_body(request, model),
            },
        )

    def check_headers(self, status: int, headers: Mapping[str, str]) -> Optional[LLMError]:
        lowered = {k.lower() for k in headers.keys()}
        if status < 400:
            return None
        if self.expired_token_header in lowered:
            return AuthFailed("LLM token expired", status_code=status, token_expired=True)
        if self.max_spend_header in lowered:
            logger.error("max_monthly_spend_reached", provider=self.provider_id, status=status)
        return None
