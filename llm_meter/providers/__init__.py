"""
Provider adapters for LLM Meter.

ADAPTERS lists every supported provider in the fixed order a refresh
processes them. Adding a provider means adding one adapter here.
"""

from typing import Dict, List

from llm_meter.config.loader import normalize_provider_name
from llm_meter.core.errors import ConfigurationError
from .anthropic import AnthropicAdapter
from .base import ProviderAdapter, ProviderContext
from .openai import OpenAIAdapter

ADAPTERS: List[ProviderAdapter] = [OpenAIAdapter(), AnthropicAdapter()]

_BY_NAME: Dict[str, ProviderAdapter] = {adapter.name: adapter for adapter in ADAPTERS}


def get_adapter(provider: str) -> ProviderAdapter:
    """Look up an adapter by provider name.

    Raises:
        ConfigurationError: If the provider is not supported
    """
    name = normalize_provider_name(provider)
    adapter = _BY_NAME.get(name)
    if adapter is None:
        raise ConfigurationError(f"Unsupported provider '{name}'.")
    return adapter


def supported_providers() -> List[str]:
    return [adapter.name for adapter in ADAPTERS]


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderContext",
    "get_adapter",
    "supported_providers",
]
