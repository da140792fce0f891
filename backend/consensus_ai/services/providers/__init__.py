"""
LLM provider adapters.

One adapter per provider API behind ProviderAdapter; the pipeline talks to
them only through ProviderRegistry.invoke(provider_id, prompt).
"""
from consensus_ai.services.providers.base import (
    InvalidResponse,
    ProviderAdapter,
    ProviderFailure,
    ProviderResponse,
    RateLimited,
    Timeout,
    TransportError,
)
from consensus_ai.services.providers.factory import ProviderRegistry, build_provider_registry

__all__ = [
    "InvalidResponse",
    "ProviderAdapter",
    "ProviderFailure",
    "ProviderRegistry",
    "ProviderResponse",
    "RateLimited",
    "Timeout",
    "TransportError",
    "build_provider_registry",
]
