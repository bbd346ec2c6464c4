from __future__ import annotations

from typing import Any

import httpx

from ..transpilers import openai as openai_transpiler
from ..transpilers.stream import StreamTranslator
from .base import CanonicalCall, ManagedProviderAdapter


class OpenAIAdapter(ManagedProviderAdapter):
    name = "openai-codex"

    def supports(self, model: str) -> bool:
        return openai_transpiler.is_openai_model(model)

    async def build_request(self, client: httpx.AsyncClient, call: CanonicalCall, token: str) -> httpx.Request:
        payload = openai_transpiler.convert_request(call.body, stream=call.stream)
        return client.build_request(
            "POST",
            f"{self.api_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "text/event-stream" if call.stream else "application/json",
            },
            json=payload,
        )

    def convert_response(self, payload: Any, model: str) -> dict[str, Any]:
        return openai_transpiler.convert_response(payload if isinstance(payload, dict) else {}, model)

    def new_translator(self, model: str) -> StreamTranslator:
        return openai_transpiler.OpenAIStreamTranslator(model, events=self.events)
