import asyncio
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from cachetools import Cache, TTLCache
from pydantic import BaseModel, ConfigDict

from unillm.core.config import settings
from unillm.errors import UnknownModel
from unillm.providers import (
    AnthropicCodec,
    CloudCodec,
    CopilotChatCodec,
    GoogleAICodec,
    ModelInfo,
    OllamaCodec,
    OpenAICodec,
    ResolvedModel,
    WireCodec,
)

logger = structlog.get_logger()

_CLAUDE_MODELS = (
    ModelInfo(id="claude-3-5-sonnet-latest", display_name="Claude 3.5 Sonnet",
              max_context_tokens=200000, max_output_tokens=8192, supports_images=True),
    ModelInfo(id="claude-3-5-haiku-latest", display_name="Claude 3.5 Haiku",
              max_context_tokens=200000, max_output_tokens=8192, supports_images=True),
    ModelInfo(id="claude-3-opus-latest", display_name="Claude 3 Opus",
              max_context_tokens=200000, max_output_tokens=4096, supports_images=True),
    ModelInfo(id="claude-3-haiku-20240307", display_name="Claude 3 Haiku",
              max_context_tokens=200000, max_output_tokens=4096, supports_images=True),
)

STATIC_CATALOGS: Dict[str, Tuple[ModelInfo, ...]] = {
    "anthropic": _CLAUDE_MODELS,
    "openai": (
        ModelInfo(id="gpt-4o", display_name="GPT-4o",
                  max_context_tokens=128000, max_output_tokens=16384, supports_images=True),
        ModelInfo(id="gpt-4o-mini", display_name="GPT-4o mini",
                  max_context_tokens=128000, max_output_tokens=16384, supports_images=True),
        ModelInfo(id="gpt-4-turbo", display_name="GPT-4 Turbo",
                  max_context_tokens=128000, max_output_tokens=4096, supports_images=True),
        ModelInfo(id="gpt-3.5-turbo", display_name="GPT-3.5 Turbo",
                  max_context_tokens=16385, max_output_tokens=4096),
        ModelInfo(id="o1", display_name="o1",
                  max_context_tokens=200000, max_output_tokens=100000, supports_images=True),
        ModelInfo(id="o1-mini", display_name="o1-mini", max_context_tokens=128000,
                  max_output_tokens=65536, supports_tools=False, supports_system=False),
    ),
    "google": (
        ModelInfo(id="gemini-1.5-pro", display_name="Gemini 1.5 Pro",
                  max_context_tokens=2000000, max_output_tokens=8192, supports_images=True),
        ModelInfo(id="gemini-1.5-flash", display_name="Gemini 1.5 Flash",
                  max_context_tokens=1000000, max_output_tokens=8192, supports_images=True),
        ModelInfo(id="gemini-2.0-flash", display_name="Gemini 2.0 Flash",
                  max_context_tokens=1048576, max_output_tokens=8192, supports_images=True),
    ),
    "copilot_chat": (
        ModelInfo(id="gpt-4o", display_name="GPT-4o", max_context_tokens=64000),
        ModelInfo(id="gpt-4", display_name="GPT-4", max_context_tokens=32768),
        ModelInfo(id="gpt-3.5-turbo", display_name="GPT-3.5", max_context_tokens=12288),
        ModelInfo(id="o1", display_name="o1", max_context_tokens=20000, supports_tools=False),
        ModelInfo(id="o1-mini", display_name="o1-mini", max_context_tokens=20000, supports_tools=False),
        ModelInfo(id="claude-3.5-sonnet", display_name="Claude 3.5 Sonnet", max_context_tokens=200000),
    ),
    "cloud": _CLAUDE_MODELS,
}


class ProviderDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    display_name: str
    codec: WireCodec
    models: Tuple[ModelInfo, ...] = ()
    dynamic_catalog: bool = False
    requires_credential: bool = True

    def model(self, model_id: str) -> Optional[ModelInfo]:
        for info in self.models:
            if info.id == model_id:
                return info
        return None


def describe(codec: WireCodec, models: Optional[Sequence[ModelInfo]] = None) -> ProviderDescriptor:
    if models is None:
        models = STATIC_CATALOGS.get(codec.provider_id, ())
    return ProviderDescriptor(
        id=codec.provider_id,
        display_name=codec.display_name,
        codec=codec,
        models=tuple(models),
        dynamic_catalog=codec.models_url() is not None,
        requires_credential=codec.requires_credential,
    )


def default_codecs() -> List[WireCodec]:
    return [
        AnthropicCodec(),
        OpenAICodec(),
        GoogleAICodec(),
        OllamaCodec(),
        CopilotChatCodec(),
        CloudCodec(),
    ]


class ProviderRegistry:
    """Immutable snapshot of the configured providers and their model catalogs."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor]) -> None:
        self._providers: Dict[str, ProviderDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._providers:
                raise ValueError(f"duplicate provider id '{descriptor.id}'")
            self._providers[descriptor.id] = descriptor

    @classmethod
    def build(cls, codecs: Optional[Iterable[WireCodec]] = None) -> "ProviderRegistry":
        return cls(describe(codec) for codec in (codecs if codecs is not None else default_codecs()))

    def list_providers(self) -> List[ProviderDescriptor]:
        return list(self._providers.values())

    def get(self, provider_id: str) -> ProviderDescriptor:
        descriptor = self._providers.get(provider_id)
        if descriptor is None:
            raise UnknownModel(f"unknown provider '{provider_id}'")
        return descriptor

    def list_models(self, provider_id: str) -> List[ModelInfo]:
        return list(self.get(provider_id).models)

    def resolve(self, provider_id: str, model_id: str) -> ResolvedModel:
        descriptor = self.get(provider_id)
        info = descriptor.model(model_id)
        if info is None:
            raise UnknownModel(f"provider '{provider_id}' has no model '{model_id}'")
        return ResolvedModel(provider_id=provider_id, model=info)

    def with_models(self, provider_id: str, models: Sequence[ModelInfo]) -> "ProviderRegistry":
        """Return a new snapshot with one provider's catalog replaced."""
        current = self.get(provider_id)
        replacement = current.model_copy(update={"models": tuple(models)})
        return ProviderRegistry(replacement if d.id == provider_id else d for d in self._providers.values())


class RegistryRef:
    """
    Points at the current registry snapshot. Swapping is a single attribute
    assignment; requests already running keep the snapshot they resolved
    against.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    @property
    def current(self) -> ProviderRegistry:
        return self._registry

    def swap(self, registry: ProviderRegistry) -> ProviderRegistry:
        previous, self._registry = self._registry, registry
        return previous


class ModelCatalog:
    """On-demand refresh of dynamic model catalogs (models-list endpoints)."""

    def __init__(self, ref: RegistryRef, transport, ttl: Optional[float] = None, maxsize: int = 64) -> None:
        self._ref = ref
        self._transport = transport
        ttl = ttl if ttl is not None else settings.MODEL_CATALOG_TTL_SECONDS
        self._cache: Cache = TTLCache(maxsize=maxsize, ttl=ttl) if ttl else Cache(maxsize=maxsize)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def refresh(self, provider_id: str, force: bool = False) -> List[ModelInfo]:
        descriptor = self._ref.current.get(provider_id)
        if not descriptor.dynamic_catalog:
            return list(descriptor.models)

        lock = self._locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            if not force and provider_id in self._cache:
                return list(self._cache[provider_id])
            codec = descriptor.codec
            payload = await self._transport.get_json(codec.models_url())
            models = codec.parse_models(payload)
            self._cache[provider_id] = tuple(models)
            self._ref.swap(self._ref.current.with_models(provider_id, models))
            logger.info("model_catalog_refreshed", provider=provider_id, models=len(models))
            return models

    def invalidate(self, provider_id: Optional[str] = None) -> None:
        if provider_id is None:
            self._cache.clear()
        else:
            self._cache.pop(provider_id, None)
