import asyncio
import os
import time
from typing import Awaitable, Callable, Dict, Mapping, Optional, Protocol, runtime_checkable

import structlog

from unillm.core.config import settings
from unillm.errors import AuthFailed
from unillm.providers.base import Credential

logger = structlog.get_logger()


@runtime_checkable
class CredentialSource(Protocol):
    async def get_credential(self, provider_id: str) -> Optional[Credential]:
        ...


@runtime_checkable
class RefreshableCredentialSource(CredentialSource, Protocol):
    async def refresh_credential(self, provider_id: str) -> Optional[Credential]:
        ...


class StaticCredentials:
    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._credentials = {k: Credential(secret=v) for k, v in secrets.items() if v}

    async def get_credential(self, provider_id: str) -> Optional[Credential]:
        return self._credentials.get(provider_id)


DEFAULT_ENV_VARS: Dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_AI_API_KEY",
    "copilot_chat": "GITHUB_COPILOT_OAUTH_TOKEN",
    "cloud": "LLM_API_TOKEN",
}


class EnvCredentials:
    """Reads secrets from the process environment on every lookup."""

    def __init__(self, env_vars: Optional[Mapping[str, str]] = None) -> None:
        self._env_vars = dict(env_vars or DEFAULT_ENV_VARS)

    async def get_credential(self, provider_id: str) -> Optional[Credential]:
        name = self._env_vars.get(provider_id)
        value = (os.getenv(name) or "").strip() if name else ""
        return Credential(secret=value) if value else None


class CachedTokenCredentials:
    """
    Short-lived bearer token fetched through a host callback. The token is
    cached until the backend reports it expired, then fetched again.
    """

    def __init__(self, provider_id: str, fetch: Callable[[], Awaitable[str]]) -> None:
        self.provider_id = provider_id
        self._fetch = fetch
        self._token: Optional[str] = None
        self._lock = asyncio.Lock()

    async def get_credential(self, provider_id: str) -> Optional[Credential]:
        if provider_id != self.provider_id:
            return None
        async with self._lock:
            if self._token is None:
                self._token = await self._fetch()
            return Credential(secret=self._token)

    async def refresh_credential(self, provider_id: str) -> Optional[Credential]:
        if provider_id != self.provider_id:
            return None
        async with self._lock:
            self._token = await self._fetch()
            logger.info("llm_token_refreshed", provider=provider_id)
            return Credential(secret=self._token)


class CopilotCredentialSource:
    """
    Wraps another source and swaps the GitHub OAuth token for a Copilot API
    token, cached until shortly before its `expires_at`.
    """

    provider_id = "copilot_chat"
    expiry_skew_seconds = 300.0

    def __init__(
        self,
        inner: CredentialSource,
        transport,
        token_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._inner = inner
        self._transport = transport
        self._token_url = token_url or settings.COPILOT_TOKEN_URL
        self._clock = clock
        self._cached: Optional[Credential] = None
        self._lock = asyncio.Lock()

    async def get_credential(self, provider_id: str) -> Optional[Credential]:
        if provider_id != self.provider_id:
            return await self._inner.get_credential(provider_id)
        async with self._lock:
            if self._cached is not None and not self._expiring(self._cached):
                return self._cached
            self._cached = await self._exchange()
            return self._cached

    async def refresh_credential(self, provider_id: str) -> Optional[Credential]:
        if provider_id != self.provider_id:
            refresh = getattr(self._inner, "refresh_credential", None)
            return await refresh(provider_id) if refresh else None
        async with self._lock:
            self._cached = await self._exchange()
            return self._cached

    def _expiring(self, credential: Credential) -> bool:
        if credential.expires_at is None:
            return False
        return credential.expires_at - self.expiry_skew_seconds <= self._clock()

    async def _exchange(self) -> Optional[Credential]:
        oauth = await self._inner.get_credential(self.provider_id)
        if oauth is None:
            return None
        payload = await self._transport.get_json(
            self._token_url,
            headers={"Authorization": f"token {oauth.secret}", "Accept": "application/json"},
        )
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise AuthFailed("Copilot token exchange returned no token")
        expires_at = payload.get("expires_at")
        logger.info("copilot_token_exchanged", expires_at=expires_at)
        return Credential(secret=str(token), expires_at=float(expires_at) if expires_at else None)
