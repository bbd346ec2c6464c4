from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..auth.lifecycle import CredentialManager
from ..errors import UpstreamError, UpstreamTimeoutError
from ..hooks.observability import EventLogger
from ..transpilers.stream import StreamTranslator, error_event

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class CanonicalCall:
    body: dict[str, Any]
    headers: Mapping[str, str] = field(default_factory=dict)
    is_disconnected: Callable[[], Awaitable[bool]] | None = None

    @property
    def model(self) -> str:
        return str(self.body.get("model") or "")

    @property
    def stream(self) -> bool:
        value = self.body.get("stream")
        return True if value is None else bool(value)

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class ProviderAdapter(ABC):
    name = "adapter"

    @abstractmethod
    def supports(self, model: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def handle(self, call: CanonicalCall) -> Response:
        raise NotImplementedError


class ManagedProviderAdapter(ProviderAdapter):
    """Adapter that authenticates with an OAuth-managed token and transpiles both directions."""

    def __init__(
        self,
        credentials: CredentialManager,
        *,
        api_url: str,
        timeout_seconds: float,
        events: EventLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.events = events or credentials.events
        self.transport = transport

    @abstractmethod
    async def build_request(self, client: httpx.AsyncClient, call: CanonicalCall, token: str) -> httpx.Request:
        raise NotImplementedError

    @abstractmethod
    def convert_response(self, payload: Any, model: str) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def new_translator(self, model: str) -> StreamTranslator:
        raise NotImplementedError

    def new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds), transport=self.transport)

    async def handle(self, call: CanonicalCall) -> Response:
        token = await self.credentials.get_valid_token()
        client = self.new_client()
        try:
            request = await self.build_request(client, call, token)
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

        if not call.stream:
            try:
                payload = await read_json(response, provider=self.name, timeout_seconds=self.timeout_seconds)
            finally:
                await response.aclose()
                await client.aclose()
            self.events.on_provider_call(self.name, call.model, "success")
            return JSONResponse(self.convert_response(payload, call.model))

        return StreamingResponse(
            relay_stream(
                response,
                client,
                call=call,
                provider=self.name,
                events=self.events,
                translator=self.new_translator(call.model),
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )


async def open_upstream(
    client: httpx.AsyncClient,
    request: httpx.Request,
    *,
    provider: str,
    model: str,
    timeout_seconds: float,
    events: EventLogger,
) -> httpx.Response:
    events.on_provider_call(provider, model, "start")
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as exc:
        events.on_provider_call(provider, model, "timeout")
        raise UpstreamTimeoutError(provider, timeout_seconds) from exc
    except httpx.HTTPError as exc:
        events.on_provider_call(provider, model, "upstream_error", detail=str(exc))
        raise UpstreamError(provider, 502, f"{type(exc).__name__}: {exc}") from exc

    if response.status_code >= 400:
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = ""
        finally:
            await response.aclose()
        logger.error("%s upstream error %s: %s", provider, response.status_code, body[:500])
        events.on_provider_call(provider, model, "upstream_error", status=response.status_code)
        raise UpstreamError(provider, response.status_code, body)
    return response


async def read_json(response: httpx.Response, *, provider: str, timeout_seconds: float) -> Any:
    try:
        await response.aread()
    except httpx.TimeoutException as exc:
        raise UpstreamTimeoutError(provider, timeout_seconds) from exc
    except httpx.HTTPError as exc:
        raise UpstreamError(provider, 502, f"{type(exc).__name__}: {exc}") from exc
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError(provider, 502, f"non-JSON response: {response.text[:300]}") from exc


async def relay_stream(
    response: httpx.Response,
    client: httpx.AsyncClient,
    *,
    call: CanonicalCall,
    provider: str,
    events: EventLogger,
    translator: StreamTranslator | None = None,
) -> AsyncIterator[bytes]:
    """Relay upstream bytes to the caller, translated when a translator is given."""
    try:
        if translator is not None:
            for event in translator.start():
                yield event.encode()
        async for chunk in response.aiter_bytes():
            if call.is_disconnected is not None and await call.is_disconnected():
                events.on_provider_call(provider, call.model, "client_disconnected")
                return
            if translator is None:
                yield chunk
                continue
            for event in translator.feed(chunk):
                yield event.encode()
        if translator is not None:
            for event in translator.close():
                yield event.encode()
        events.on_provider_call(provider, call.model, "success")
    except httpx.TimeoutException:
        events.on_provider_call(provider, call.model, "timeout")
        yield error_event("timeout_error", f"{provider} stream timed out").encode()
    except httpx.HTTPError as exc:
        logger.warning("%s stream interrupted: %s", provider, exc)
        events.on_provider_call(provider, call.model, "stream_error", detail=str(exc))
        yield error_event("api_error", "Stream interrupted").encode()
    except Exception as exc:
        logger.exception("%s stream translation failed", provider)
        events.on_provider_call(provider, call.model, "stream_error", detail=f"{type(exc).__name__}: {exc}")
        yield error_event("api_error", "Stream translation failed").encode()
    finally:
        await response.aclose()
        await client.aclose()
