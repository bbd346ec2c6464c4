"""Provider adapters and the model router."""

from .base import CanonicalCall, ManagedProviderAdapter, ProviderAdapter
from .google_adapter import GoogleAntigravityAdapter
from .openai_adapter import OpenAIAdapter
from .passthrough import AnthropicPassthroughAdapter
from .router import AdapterRouter, AliasAdapter, build_router

__all__ = [
    "AdapterRouter",
    "AliasAdapter",
    "AnthropicPassthroughAdapter",
    "CanonicalCall",
    "GoogleAntigravityAdapter",
    "ManagedProviderAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "build_router",
]
