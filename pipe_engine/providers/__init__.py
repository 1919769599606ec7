"""Provider registry: resolves the ``provider`` half of ``provider:model-name``."""

from __future__ import annotations

from pipe_engine.engine.errors import ConfigurationError
from pipe_engine.providers.anthropic import AnthropicAdapter
from pipe_engine.providers.base import AdapterState, Framing, ProviderAdapter
from pipe_engine.providers.cohere import CohereAdapter
from pipe_engine.providers.google import GoogleAdapter
from pipe_engine.providers.ollama import OllamaAdapter
from pipe_engine.providers.openai_compat import OPENAI_COMPATIBLE, OpenAICompatibleAdapter, VendorProfile

_NATIVE: dict[str, type[ProviderAdapter]] = {
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
    "cohere": CohereAdapter,
    "ollama": OllamaAdapter,
}

SUPPORTED_PROVIDERS: tuple[str, ...] = tuple(sorted([*OPENAI_COMPATIBLE, *_NATIVE]))


def create_adapter(provider: str, base_url: str | None = None) -> ProviderAdapter:
    """Return a fresh adapter for ``provider``; unknown names are a ``ConfigurationError``."""
    if provider in OPENAI_COMPATIBLE:
        return OpenAICompatibleAdapter(OPENAI_COMPATIBLE[provider], base_url=base_url)
    try:
        adapter_cls = _NATIVE[provider]
    except KeyError:
        raise ConfigurationError(
            f"Unknown provider '{provider}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        ) from None
    return adapter_cls(base_url=base_url)


__all__ = [
    "AdapterState",
    "AnthropicAdapter",
    "CohereAdapter",
    "Framing",
    "GoogleAdapter",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "SUPPORTED_PROVIDERS",
    "VendorProfile",
    "create_adapter",
]
