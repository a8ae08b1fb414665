"""Provider adapters.

The core never picks a provider; :func:`create_adapter` maps an explicitly
configured profile to its adapter class.
"""

from __future__ import annotations

import httpx

from chat_relay.config import ProviderProfile
from chat_relay.errors import ConfigError
from chat_relay.providers.base import ProviderAdapter
from chat_relay.providers.gemini import GeminiAdapter
from chat_relay.providers.openai import AzureOpenAIAdapter, OpenAIAdapter

_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "azure_openai": AzureOpenAIAdapter,
    "gemini": GeminiAdapter,
}


def create_adapter(
    profile: ProviderProfile,
    tier: int = 0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    """Instantiate the adapter for ``profile.provider``."""
    try:
        cls = _ADAPTERS[profile.provider]
    except KeyError:
        raise ConfigError(
            f"Unknown provider: {profile.provider}. "
            f"Available: {', '.join(_ADAPTERS)}"
        ) from None
    return cls(profile, tier=tier, transport=transport)


__all__ = [
    "AzureOpenAIAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "create_adapter",
]
