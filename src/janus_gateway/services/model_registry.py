from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import httpx

from ..auth.lifecycle import CredentialManager
from ..errors import GatewayError

logger = logging.getLogger(__name__)

STATIC_GOOGLE_MODELS = (
    "gemini-3-pro",
    "gemini-3-flash",
    "gemini-2.5-pro",
    "gemini-2.5-flash",
)


@dataclass
class _CacheEntry:
    models: list[dict[str, Any]]
    stored_at: float


class ModelRegistry:
    def __init__(
        self,
        *,
        openai_credentials: CredentialManager | None = None,
        anthropic_api_url: str = "https://api.anthropic.com",
        openai_api_url: str = "https://api.openai.com/v1",
        ttl_seconds: int = 3600,
        request_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.openai_credentials = openai_credentials
        self.anthropic_api_url = anthropic_api_url.rstrip("/")
        self.openai_api_url = openai_api_url.rstrip("/")
        self.ttl_seconds = max(1, ttl_seconds)
        self.request_timeout_seconds = request_timeout_seconds
        self.transport = transport
        self.clock = clock
        self._lock = asyncio.Lock()
        self._cache: dict[str, _CacheEntry] = {}

    async def list_models(
        self,
        *,
        anthropic_api_key: str | None = None,
        anthropic_version: str | None = None,
    ) -> list[dict[str, Any]]:
        cache_key = _fingerprint(anthropic_api_key)
        async with self._lock:
            entry = self._cache.get(cache_key)
            if entry and self.clock() - entry.stored_at < self.ttl_seconds:
                return [dict(model) for model in entry.models]

            models: list[dict[str, Any]] = []
            timeout = httpx.Timeout(self.request_timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                if anthropic_api_key:
                    models.extend(await self._fetch_anthropic(client, anthropic_api_key, anthropic_version))
                models.extend(await self._fetch_openai(client))
            models.extend(_static_google_models())

            unique: dict[str, dict[str, Any]] = {}
            for model in models:
                unique.setdefault(model["id"], model)
            result = list(unique.values())
            now = self.clock()
            self._cache = {
                key: cached for key, cached in self._cache.items() if now - cached.stored_at < self.ttl_seconds
            }
            self._cache[cache_key] = _CacheEntry(models=result, stored_at=now)
            return [dict(model) for model in result]

    def invalidate(self) -> None:
        self._cache.clear()

    async def _fetch_anthropic(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        version: str | None,
    ) -> list[dict[str, Any]]:
        try:
            response = await client.get(
                f"{self.anthropic_api_url}/v1/models",
                headers={"x-api-key": api_key, "anthropic-version": version or "2023-06-01"},
            )
            if response.status_code >= 400:
                logger.warning("Anthropic models request failed: HTTP %s", response.status_code)
                return []
            rows = response.json().get("data") or []
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("Anthropic models request failed: %s", exc)
            return []
        return [
            {
                "id": row["id"],
                "object": "model",
                "created": _iso_to_epoch(row.get("created_at")),
                "owned_by": "anthropic",
            }
            for row in rows
            if isinstance(row, dict) and row.get("id")
        ]

    async def _fetch_openai(self, client: httpx.AsyncClient) -> list[dict[str, Any]]:
        if self.openai_credentials is None:
            return []
        try:
            token = await self.openai_credentials.get_valid_token()
        except GatewayError as exc:
            logger.debug("skipping OpenAI models: %s", exc)
            return []
        try:
            response = await client.get(
                f"{self.openai_api_url}/models",
                headers={"Authorization": f"Bearer {token}"},
            )
            if response.status_code >= 400:
                logger.warning("OpenAI models request failed: HTTP %s", response.status_code)
                return []
            rows = response.json().get("data") or []
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("OpenAI models request failed: %s", exc)
            return []
        return [
            {
                "id": row["id"],
                "object": "model",
                "created": int(row.get("created") or 0),
                "owned_by": row.get("owned_by") or "openai",
            }
            for row in rows
            if isinstance(row, dict) and row.get("id")
        ]


def _static_google_models() -> list[dict[str, Any]]:
    created = int(time.time())
    return [
        {"id": model_id, "object": "model", "created": created, "owned_by": "google"}
        for model_id in STATIC_GOOGLE_MODELS
    ]


def _iso_to_epoch(value: Any) -> int:
    if not isinstance(value, str) or not value:
        return 0
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return 0


def _fingerprint(api_key: str | None) -> str:
    if not api_key:
        return ""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()
