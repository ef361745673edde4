"""Provider factory.

Maps a configured provider name onto a concrete adapter:

    provider = create_provider(load_config())

``get_provider_models`` returns the static catalogue for a provider without
touching the network; use the adapter's ``list_models()`` for a live list.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List

from thiran.config import ThiranConfig
from thiran.domain.contracts import ProviderAdapter
from thiran.domain.errors import ProviderNotFoundError
from thiran.observability.structured_log import log_json
from thiran.providers import anthropic_provider, gemini_provider, ollama_provider, openai_compatible
from thiran.providers.anthropic_provider import AnthropicProvider
from thiran.providers.gemini_provider import GeminiProvider
from thiran.providers.ollama_provider import OllamaProvider
from thiran.providers.openai_compatible import OpenAICompatibleProvider

logger = logging.getLogger(__name__)


def _anthropic(config: ThiranConfig) -> ProviderAdapter:
    return AnthropicProvider(api_key=config.anthropic_api_key, model=config.model)


def _openai(config: ThiranConfig) -> ProviderAdapter:
    return OpenAICompatibleProvider(api_key=config.openai_api_key, model=config.model)


def _gemini(config: ThiranConfig) -> ProviderAdapter:
    return GeminiProvider(api_key=config.google_api_key, model=config.model)


def _ollama(config: ThiranConfig) -> ProviderAdapter:
    return OllamaProvider(base_url=config.ollama_base_url, model=config.model)


_FACTORIES: Dict[str, Callable[[ThiranConfig], ProviderAdapter]] = {
    "anthropic": _anthropic,
    "openai": _openai,
    "gemini": _gemini,
    "ollama": _ollama,
}

_STATIC_MODELS: Dict[str, List[str]] = {
    "anthropic": anthropic_provider.KNOWN_MODELS,
    "openai": openai_compatible.KNOWN_MODELS,
    "gemini": gemini_provider.KNOWN_MODELS,
    "ollama": ollama_provider.POPULAR_MODELS,
}


def create_provider(config: ThiranConfig) -> ProviderAdapter:
    name = (config.provider or "").strip().lower()
    factory = _FACTORIES.get(name)
    if factory is None:
        raise ProviderNotFoundError(f"Unknown provider: {config.provider}. Available: {list_providers()}")
    provider = factory(config)
    log_json(logger, "provider.created", provider=name, model=provider.default_model)
    return provider


def list_providers() -> List[str]:
    return list(_FACTORIES.keys())


def get_provider_models(name: str) -> List[str]:
    return list(_STATIC_MODELS.get((name or "").strip().lower(), []))
