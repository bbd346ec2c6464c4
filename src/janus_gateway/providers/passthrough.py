from __future__ import annotations

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..errors import AuthenticationError
from ..hooks.observability import EventLogger
from .base import SSE_HEADERS, CanonicalCall, ProviderAdapter, open_upstream, read_json, relay_stream

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
FORWARDED_HEADERS = ("anthropic-beta",)


class AnthropicPassthroughAdapter(ProviderAdapter):
    """Forwards canonical requests verbatim to the Anthropic Messages API with the caller's key."""

    name = "anthropic"

    def __init__(
        self,
        *,
        api_url: str = "https://api.anthropic.com",
        timeout_seconds: float = 30.0,
        events: EventLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.events = events or EventLogger()
        self.transport = transport

    def supports(self, model: str) -> bool:
        return True

    def _headers(self, call: CanonicalCall) -> dict[str, str]:
        api_key = call.header("x-api-key")
        if not api_key:
            raise AuthenticationError(
                f"model {call.model!r} is forwarded to Anthropic and requires an x-api-key header"
            )
        headers = {
            "x-api-key": api_key,
            "anthropic-version": call.header("anthropic-version") or DEFAULT_ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        for name in FORWARDED_HEADERS:
            value = call.header(name)
            if value:
                headers[name] = value
        return headers

    async def handle(self, call: CanonicalCall) -> Response:
        headers = self._headers(call)
        client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds), transport=self.transport)
        try:
            request = client.build_request(
                "POST",
                f"{self.api_url}/v1/messages",
                headers=headers,
                json={**call.body, "stream": call.stream},
            )
            response = await open_upstream(
                client,
                request,
                provider=self.name,
                model=call.model,
                timeout_seconds=self.timeout_seconds,
                events=self.events,
            )
        except BaseException:
            await client.aclose()
            raise

        if "text/event-stream" in response.headers.get("content-type", ""):
            return StreamingResponse(
                relay_stream(response, client, call=call, provider=self.name, events=self.events),
                status_code=response.status_code,
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        try:
            payload = await read_json(response, provider=self.name, timeout_seconds=self.timeout_seconds)
        finally:
            await response.aclose()
            await client.aclose()
        self.events.on_provider_call(self.name, call.model, "success")
        return JSONResponse(payload, status_code=response.status_code)
