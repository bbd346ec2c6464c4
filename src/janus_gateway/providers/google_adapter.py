from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..auth.lifecycle import CredentialManager
from ..errors import UpstreamError, UpstreamTimeoutError
from ..hooks.observability import EventLogger
from ..transpilers import google as google_transpiler
from ..transpilers.stream import StreamTranslator
from .base import CanonicalCall, ManagedProviderAdapter

logger = logging.getLogger(__name__)

ANTIGRAVITY_METADATA = {
    "ideType": "ANTIGRAVITY",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}
ANTIGRAVITY_HEADERS = {
    "User-Agent": "antigravity",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": '{"ideType":"ANTIGRAVITY","platform":"PLATFORM_UNSPECIFIED","pluginType":"GEMINI"}',
}


class GoogleAntigravityAdapter(ManagedProviderAdapter):
    """Gemini models served through the Cloud Code internal API used by Antigravity."""

    name = "google-antigravity"

    def __init__(
        self,
        credentials: CredentialManager,
        *,
        api_url: str,
        timeout_seconds: float,
        project_id: str | None = None,
        events: EventLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            credentials,
            api_url=api_url,
            timeout_seconds=timeout_seconds,
            events=events,
            transport=transport,
        )
        self.project_id = project_id
        self._project_lock = asyncio.Lock()

    def supports(self, model: str) -> bool:
        return google_transpiler.is_google_model(model)

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **ANTIGRAVITY_HEADERS,
        }

    async def build_request(self, client: httpx.AsyncClient, call: CanonicalCall, token: str) -> httpx.Request:
        project_id = await self.resolve_project_id(client, token)
        body: dict[str, Any] = {
            "model": google_transpiler.map_google_model(call.model),
            "request": google_transpiler.convert_request(call.body),
        }
        if project_id:
            body["project"] = project_id
        if call.stream:
            url = f"{self.api_url}/v1internal:streamGenerateContent"
            params = {"alt": "sse"}
        else:
            url = f"{self.api_url}/v1internal:generateContent"
            params = {}
        return client.build_request("POST", url, params=params, headers=self._headers(token), json=body)

    async def resolve_project_id(self, client: httpx.AsyncClient, token: str) -> str | None:
        if self.project_id:
            return self.project_id
        async with self._project_lock:
            if self.project_id:
                return self.project_id
            try:
                response = await client.post(
                    f"{self.api_url}/v1internal:loadCodeAssist",
                    headers=self._headers(token),
                    json={"metadata": ANTIGRAVITY_METADATA},
                )
            except httpx.TimeoutException as exc:
                raise UpstreamTimeoutError(self.name, self.timeout_seconds) from exc
            except httpx.HTTPError as exc:
                raise UpstreamError(self.name, 502, f"loadCodeAssist failed: {exc}") from exc
            if response.status_code >= 400:
                logger.warning("loadCodeAssist failed: HTTP %s", response.status_code)
                return None
            try:
                payload = response.json()
            except ValueError:
                return None
            self.project_id = _extract_project_id(payload)
            if self.project_id:
                logger.info("resolved Antigravity project id %s", self.project_id)
            return self.project_id

    def convert_response(self, payload: Any, model: str) -> dict[str, Any]:
        return google_transpiler.convert_response(payload if isinstance(payload, dict) else {}, model)

    def new_translator(self, model: str) -> StreamTranslator:
        return google_transpiler.GoogleStreamTranslator(model, events=self.events)


def _extract_project_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    project = payload.get("cloudaicompanionProject")
    if isinstance(project, str):
        return project.strip() or None
    if isinstance(project, dict):
        project_id = project.get("id")
        if isinstance(project_id, str):
            return project_id.strip() or None
    return None
