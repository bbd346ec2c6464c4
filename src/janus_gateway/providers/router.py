from __future__ import annotations

import logging
from typing import Iterable

import httpx
from fastapi.responses import Response

from ..auth.lifecycle import CredentialManager
from ..auth.models import ProviderId
from ..config import GatewaySettings
from ..hooks.observability import EventLogger
from .base import CanonicalCall, ProviderAdapter
from .google_adapter import GoogleAntigravityAdapter
from .openai_adapter import OpenAIAdapter
from .passthrough import AnthropicPassthroughAdapter

logger = logging.getLogger(__name__)

ALIAS_PREFIXES = ("claude-",)


class AliasAdapter(ProviderAdapter):
    """Routes canonical-protocol model aliases to a managed provider adapter."""

    def __init__(self, target: ProviderAdapter, prefixes: Iterable[str] = ALIAS_PREFIXES) -> None:
        self.target = target
        self.prefixes = tuple(prefixes)
        self.name = f"alias->{target.name}"

    def supports(self, model: str) -> bool:
        return model.startswith(self.prefixes)

    async def handle(self, call: CanonicalCall) -> Response:
        return await self.target.handle(call)


class AdapterRouter:
    def __init__(self, adapters: list[ProviderAdapter]) -> None:
        if not adapters:
            raise ValueError("router needs at least one adapter")
        self.adapters = adapters

    def select(self, model: str) -> ProviderAdapter:
        for adapter in self.adapters:
            if adapter.supports(model):
                logger.debug("model %s routed to %s", model, adapter.name)
                return adapter
        raise LookupError(f"no adapter supports model {model!r}")


def build_router(
    settings: GatewaySettings,
    credentials: dict[ProviderId, CredentialManager],
    *,
    events: EventLogger,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AdapterRouter:
    openai_adapter = OpenAIAdapter(
        credentials[ProviderId.OPENAI_CODEX],
        api_url=settings.openai_api_url,
        timeout_seconds=settings.timeout_for(OpenAIAdapter.name),
        events=events,
        transport=transport,
    )
    google_adapter = GoogleAntigravityAdapter(
        credentials[ProviderId.GOOGLE_ANTIGRAVITY],
        api_url=settings.google_api_url,
        timeout_seconds=settings.timeout_for(GoogleAntigravityAdapter.name),
        project_id=settings.google_project_id,
        events=events,
        transport=transport,
    )
    adapters: list[ProviderAdapter] = [openai_adapter, google_adapter]
    if settings.alias_provider == "google":
        adapters.append(AliasAdapter(google_adapter))
    elif settings.alias_provider == "openai":
        adapters.append(AliasAdapter(openai_adapter))
    adapters.append(
        AnthropicPassthroughAdapter(
            api_url=settings.anthropic_api_url,
            timeout_seconds=settings.timeout_for(AnthropicPassthroughAdapter.name),
            events=events,
            transport=transport,
        )
    )
    return AdapterRouter(adapters)
