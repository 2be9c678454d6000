"""LLM providers for cloud analysis.

Usage:
    from retain.analysis.providers import create_provider

    provider = create_provider("anthropic", api_key="sk-ant-...")
    response = provider.complete(system_prompt="...", user_prompt="...")
"""

import logging
from typing import Literal

from retain.analysis.providers.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)

ProviderType = Literal["openai", "anthropic"]


def create_provider(
    provider_type: str,
    api_key: str,
    model: str | None = None,
) -> LLMProvider:
    """Build a provider for ``provider_type``.

    Raises:
        ValueError: If the provider type is unknown or the API key is missing
    """
    if not api_key:
        raise ValueError(f"API key is required for {provider_type} provider")

    if provider_type == "openai":
        from retain.analysis.providers.openai_provider import (
            DEFAULT_OPENAI_MODEL,
            OpenAIProvider,
        )

        return OpenAIProvider(api_key=api_key, model=model or DEFAULT_OPENAI_MODEL)

    if provider_type == "anthropic":
        from retain.analysis.providers.anthropic_provider import (
            DEFAULT_ANTHROPIC_MODEL,
            AnthropicProvider,
        )

        return AnthropicProvider(api_key=api_key, model=model or DEFAULT_ANTHROPIC_MODEL)

    raise ValueError(
        f"Unknown provider type: {provider_type}. Supported providers: openai, anthropic"
    )


def get_available_providers() -> list[str]:
    return ["openai", "anthropic"]


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ProviderType",
    "create_provider",
    "get_available_providers",
]
