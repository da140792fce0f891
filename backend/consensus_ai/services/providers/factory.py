"""
Provider registry: the single entry point the pipeline uses to reach a provider.

Adding a provider means adding an adapter class and an entry in
ADAPTER_CLASSES; the orchestrator only ever sees provider ids.
"""
from typing import Dict, Iterable, List, Optional, Type

import httpx

from consensus_ai.core.config import ProviderSettings
from consensus_ai.core.logging import get_logger
from consensus_ai.services.providers.anthropic import AnthropicAdapter
from consensus_ai.services.providers.base import ProviderAdapter, ProviderResponse
from consensus_ai.services.providers.cohere import CohereAdapter
from consensus_ai.services.providers.google import GoogleAdapter
from consensus_ai.services.providers.openai import OpenAIAdapter

logger = get_logger(__name__)

ADAPTER_CLASSES: Dict[str, Type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
    "cohere": CohereAdapter,
}


class ProviderRegistry:
    """Ordered collection of adapters keyed by provider id."""

    def __init__(self, adapters: Iterable[ProviderAdapter]):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            self._adapters[adapter.provider_id] = adapter

    def ids(self) -> List[str]:
        return list(self._adapters)

    def get(self, provider_id: str) -> ProviderAdapter:
        try:
            return self._adapters[provider_id]
        except KeyError:
            raise KeyError(f"provider {provider_id} is not configured") from None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    async def invoke(
        self,
        provider_id: str,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> ProviderResponse:
        return await self.get(provider_id).invoke(prompt, max_tokens=max_tokens, temperature=temperature)

    def health(self) -> Dict[str, dict]:
        return {
            provider_id: {
                "model": adapter.settings.model,
                "circuit_breaker": adapter.circuit_breaker.get_metrics(),
            }
            for provider_id, adapter in self._adapters.items()
        }


def build_provider_registry(
    providers: Iterable[ProviderSettings],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Build one adapter per configured provider."""
    adapters = []
    for settings in providers:
        adapter_cls = ADAPTER_CLASSES[settings.kind]
        adapters.append(adapter_cls(settings, transport=transport))
        logger.info(
            "provider_configured",
            provider=settings.id,
            kind=settings.kind,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
        )
    return ProviderRegistry(adapters)
