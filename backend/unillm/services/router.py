from typing import Optional, Tuple

from unillm.errors import UnknownModel
from unillm.services.registry import ProviderRegistry


def resolve_model_ref(registry: ProviderRegistry, model: str, provider: Optional[str] = None) -> Tuple[str, str]:
    """
    Split a model reference into (provider_id, model_id).

    An explicit provider wins. Otherwise the reference must be prefixed,
    e.g. 'anthropic:claude-3-5-sonnet-latest'. Only the first segment is
    treated as a prefix, and only when it names a configured provider, so
    'ollama:llama3:8b' resolves to ('ollama', 'llama3:8b').
    """
    if provider:
        return provider, model
    prefix, sep, rest = model.partition(":")
    if sep and rest and prefix in {p.id for p in registry.list_providers()}:
        return prefix, rest
    raise UnknownModel(f"model reference '{model}' has no provider prefix")
