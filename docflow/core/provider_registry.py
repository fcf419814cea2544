"""Registry of LLM providers keyed by ``(llm_provider, llm_model)``."""

from typing import Dict, Iterable, List, Optional, Tuple

import httpx

from docflow.config import LLMSettings
from docflow.core.base_llm_client import BaseLLMClient
from docflow.core.llm_provider import (
    AnthropicProvider,
    LLMProvider,
    OpenAIProvider,
    OpenRouterProvider,
)
from docflow.utils.exceptions import ConfigurationError, PermanentProviderError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

ProviderKey = Tuple[str, str]


def parse_provider_spec(spec: str) -> ProviderKey:
    """Split ``"provider/model"`` on the first slash.

    OpenRouter model names contain slashes themselves, so
    ``"openrouter/openai/gpt-4o-mini"`` maps to
    ``("openrouter", "openai/gpt-4o-mini")``.
    """
    provider, sep, model = spec.strip().partition("/")
    if not sep or not provider or not model:
        raise ConfigurationError(f"Invalid provider spec '{spec}', expected 'provider/model'")
    return provider.lower(), model


class ProviderRegistry:
    """Lookup table for provider instances."""

    def __init__(self, providers: Optional[Iterable[LLMProvider]] = None):
        self._providers: Dict[ProviderKey, LLMProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: LLMProvider) -> None:
        key = (provider.provider, provider.model)
        self._providers[key] = provider
        LOGGER.debug(f"Registered LLM provider {key[0]}/{key[1]}")

    def get(self, llm_provider: str, llm_model: str) -> LLMProvider:
        try:
            return self._providers[(llm_provider, llm_model)]
        except KeyError:
            raise PermanentProviderError(
                f"No LLM provider registered for {llm_provider}/{llm_model}",
                provider=llm_provider,
                model=llm_model,
            ) from None

    def keys(self) -> List[ProviderKey]:
        return list(self._providers)

    @classmethod
    def from_settings(
        cls,
        llm_settings: LLMSettings,
        stage_providers: Dict[str, List[str]],
        timeout: float = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderRegistry":
        """Build one provider per distinct ``provider/model`` in the stage config."""
        registry = cls()
        seen = set()
        for specs in stage_providers.values():
            for spec in specs:
                key = parse_provider_spec(spec)
                if key in seen:
                    continue
                seen.add(key)
                registry.register(build_provider(key[0], key[1], llm_settings, timeout, transport))

        LOGGER.info(f"Provider registry initialized with {len(seen)} provider(s)")
        return registry


def build_provider(
    llm_provider: str,
    llm_model: str,
    llm_settings: LLMSettings,
    timeout: float = 60,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMProvider:
    """Create the provider instance for one registry key."""
    if llm_provider == "openai":
        api_key, url, provider_cls = llm_settings.openai_api_key, llm_settings.openai_api_url, OpenAIProvider
    elif llm_provider == "anthropic":
        api_key, url, provider_cls = llm_settings.anthropic_api_key, llm_settings.anthropic_api_url, AnthropicProvider
    elif llm_provider == "openrouter":
        api_key, url, provider_cls = llm_settings.openrouter_api_key, llm_settings.openrouter_api_url, OpenRouterProvider
    else:
        raise ConfigurationError(f"Unsupported LLM provider '{llm_provider}'")

    if not api_key:
        LOGGER.warning(f"No API key configured for {llm_provider}; calls will fail with an auth error")

    client = BaseLLMClient(
        api_key=api_key,
        base_url=url,
        provider=llm_provider,
        model=llm_model,
        timeout=timeout,
        max_retries=llm_settings.http_max_retries,
        transport=transport,
    )
    kwargs = dict(
        temperature=llm_settings.temperature,
        max_tokens=llm_settings.max_tokens,
        price_per_1k_tokens=llm_settings.token_prices.get(llm_model, 0.0),
    )
    if provider_cls is AnthropicProvider:
        return AnthropicProvider(client, llm_model, api_version=llm_settings.anthropic_version, **kwargs)
    return provider_cls(client, llm_model, **kwargs)
