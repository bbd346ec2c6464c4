from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from janus_gateway.auth.lifecycle import build_credential_managers
from janus_gateway.auth.models import ProviderId, TokenRecord
from janus_gateway.errors import AuthenticationError, UpstreamError, UpstreamTimeoutError
from janus_gateway.hooks.observability import EventLogger
from janus_gateway.providers.base import CanonicalCall, relay_stream
from janus_gateway.providers.google_adapter import GoogleAntigravityAdapter
from janus_gateway.providers.openai_adapter import OpenAIAdapter
from janus_gateway.providers.passthrough import AnthropicPassthroughAdapter
from janus_gateway.transpilers.openai import OpenAIStreamTranslator


class ScriptedStream(httpx.AsyncByteStream):
    def __init__(self, chunks: list[bytes], error: Exception | None = None) -> None:
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


def _credentials(settings, token_store):
    token_store.save("openai", TokenRecord(access_token="openai-token"))
    token_store.save("google", TokenRecord(access_token="google-token"))
    return build_credential_managers(settings, token_store)


def _openai_adapter(settings, token_store, handler, events: EventLogger | None = None) -> OpenAIAdapter:
    return OpenAIAdapter(
        _credentials(settings, token_store)[ProviderId.OPENAI_CODEX],
        api_url="https://api.openai.test/v1",
        timeout_seconds=5,
        events=events,
        transport=httpx.MockTransport(handler),
    )


def _google_adapter(settings, token_store, handler, project_id: str | None = None) -> GoogleAntigravityAdapter:
    return GoogleAntigravityAdapter(
        _credentials(settings, token_store)[ProviderId.GOOGLE_ANTIGRAVITY],
        api_url="https://cloudcode.test",
        timeout_seconds=5,
        project_id=project_id,
        transport=httpx.MockTransport(handler),
    )


async def _body(response) -> bytes:
    if hasattr(response, "body_iterator"):
        chunks = []
        async for chunk in response.body_iterator:
            chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
        return b"".join(chunks)
    return response.body


def _frames(raw: bytes) -> list[tuple[str, dict[str, Any]]]:
    frames = []
    for block in raw.decode("utf-8").split("\n\n"):
        if not block.strip():
            continue
        event_line, data_line = block.split("\n")
        frames.append((event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))))
    return frames


def _call(body: dict[str, Any], **kwargs) -> CanonicalCall:
    return CanonicalCall(body=body, **kwargs)


def test_openai_adapter_non_streaming(settings, token_store) -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "Hi!"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 2},
            },
        )

    adapter = _openai_adapter(settings, token_store, handler)
    call = _call({"model": "gpt-4o", "messages": [{"role": "user", "content": "Hello!"}], "max_tokens": 10, "stream": False})

    async def run():
        response = await adapter.handle(call)
        return response, await _body(response)

    response, raw = asyncio.run(run())
    payload = json.loads(raw)

    assert response.status_code == 200
    assert seen["url"] == "https://api.openai.test/v1/chat/completions"
    assert seen["auth"] == "Bearer openai-token"
    assert seen["body"]["stream"] is False
    assert seen["body"]["messages"] == [{"role": "user", "content": "Hello!"}]
    assert payload["content"][0]["text"] == "Hi!"
    assert payload["stop_reason"] == "end_turn"
    assert payload["usage"] == {"input_tokens": 3, "output_tokens": 2}


def test_openai_adapter_streams_canonical_events(settings, token_store) -> None:
    sse = (
        b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}\n\n'
        b"data: [DONE]\n\n"
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=ScriptedStream([sse[:30], sse[30:]]))

    adapter = _openai_adapter(settings, token_store, handler)

    async def run():
        response = await adapter.handle(_call({"model": "gpt-4o", "messages": [{"role": "user", "content": "x"}], "max_tokens": 5}))
        return response, await _body(response)

    response, raw = asyncio.run(run())
    frames = _frames(raw)

    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert [name for name, _ in frames] == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    assert "".join(data["delta"]["text"] for name, data in frames if name == "content_block_delta") == "Hello"


def test_upstream_error_carries_status_and_body(settings, token_store) -> None:
    events = EventLogger()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text='{"error":{"message":"rate limited"}}')

    adapter = _openai_adapter(settings, token_store, handler, events=events)

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(adapter.handle(_call({"model": "gpt-4o", "messages": [], "max_tokens": 1, "stream": False})))

    assert exc_info.value.status == 429
    assert exc_info.value.status_code == 429
    assert "rate limited" in exc_info.value.body
    assert [event.name for event in events.list_events("provider_call")] == ["start", "upstream_error"]


def test_upstream_timeout_is_typed(settings, token_store) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    adapter = _openai_adapter(settings, token_store, handler)

    with pytest.raises(UpstreamTimeoutError) as exc_info:
        asyncio.run(adapter.handle(_call({"model": "gpt-4o", "messages": [], "max_tokens": 1})))

    assert exc_info.value.status_code == 504
    assert exc_info.value.error_type == "timeout_error"


def test_mid_stream_failure_emits_terminal_error_event(settings, token_store) -> None:
    upstream = ScriptedStream(
        [b'data: {"choices":[{"delta":{"content":"partial"}}]}\n\n'],
        error=httpx.ReadError("connection reset"),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=upstream)

    adapter = _openai_adapter(settings, token_store, handler)

    async def run():
        response = await adapter.handle(_call({"model": "gpt-4o", "messages": [], "max_tokens": 1}))
        return await _body(response)

    frames = _frames(asyncio.run(run()))

    assert [name for name, _ in frames] == ["message_start", "content_block_start", "content_block_delta", "error"]
    assert frames[-1][1] == {"type": "error", "error": {"type": "api_error", "message": "Stream interrupted"}}
    assert upstream.closed


def test_client_disconnect_aborts_upstream_read(settings, token_store) -> None:
    upstream = ScriptedStream(
        [
            b'data: {"choices":[{"delta":{"content":"one"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"two"}}]}\n\n',
        ]
    )
    events = EventLogger()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=upstream)

    async def disconnected() -> bool:
        return True

    adapter = _openai_adapter(settings, token_store, handler, events=events)

    async def run():
        call = _call({"model": "gpt-4o", "messages": [], "max_tokens": 1}, is_disconnected=disconnected)
        response = await adapter.handle(call)
        return await _body(response)

    frames = _frames(asyncio.run(run()))

    assert [name for name, _ in frames] == ["message_start", "content_block_start"]
    assert upstream.closed
    assert "client_disconnected" in [event.name for event in events.list_events("provider_call")]


def test_google_adapter_resolves_project_once_and_wraps_request(settings, token_store) -> None:
    calls: list[tuple[str, dict[str, Any]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append((request.url.path, body))
        assert request.headers["Authorization"] == "Bearer google-token"
        if request.url.path == "/v1internal:loadCodeAssist":
            assert body == {"metadata": {"ideType": "ANTIGRAVITY", "platform": "PLATFORM_UNSPECIFIED", "pluginType": "GEMINI"}}
            return httpx.Response(200, json={"cloudaicompanionProject": {"id": "resolved-project"}})
        assert request.url.path == "/v1internal:generateContent"
        return httpx.Response(
            200,
            json={"response": {"candidates": [{"content": {"parts": [{"text": "pong"}]}, "finishReason": "STOP"}]}},
        )

    adapter = _google_adapter(settings, token_store, handler)
    call = _call({"model": "gemini-2.5-pro", "system": "sys", "messages": [{"role": "user", "content": "ping"}], "max_tokens": 8, "stream": False})

    async def run():
        first = json.loads(await _body(await adapter.handle(call)))
        second = json.loads(await _body(await adapter.handle(call)))
        return first, second

    first, second = asyncio.run(run())

    assert first["content"][0]["text"] == "pong"
    assert second["stop_reason"] == "end_turn"
    paths = [path for path, _ in calls]
    assert paths.count("/v1internal:loadCodeAssist") == 1
    generate_body = calls[1][1]
    assert generate_body["model"] == "gemini-2.5-pro"
    assert generate_body["project"] == "resolved-project"
    assert generate_body["request"]["systemInstruction"] == {"parts": [{"text": "sys"}]}
    assert generate_body["request"]["generationConfig"] == {"maxOutputTokens": 8}


def test_google_adapter_streams_with_sse_param(settings, token_store) -> None:
    sse = b'data: {"response":{"candidates":[{"content":{"parts":[{"text":"hi"}]},"finishReason":"STOP"}]}}\r\n\r\n'

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1internal:streamGenerateContent"
        assert request.url.params["alt"] == "sse"
        assert request.headers["User-Agent"] == "antigravity"
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=ScriptedStream([sse]))

    adapter = _google_adapter(settings, token_store, handler, project_id="configured")

    async def run():
        response = await adapter.handle(_call({"model": "gemini-3-flash", "messages": [{"role": "user", "content": "x"}], "max_tokens": 5}))
        return await _body(response)

    frames = _frames(asyncio.run(run()))

    assert [name for name, _ in frames][-3:] == ["content_block_stop", "message_delta", "message_stop"]


def test_passthrough_requires_caller_api_key() -> None:
    adapter = AnthropicPassthroughAdapter(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    with pytest.raises(AuthenticationError):
        asyncio.run(adapter.handle(_call({"model": "claude-x", "messages": [], "max_tokens": 1})))


def test_passthrough_forwards_request_verbatim() -> None:
    seen: dict[str, Any] = {}
    body = {
        "model": "claude-sonnet-4-5",
        "messages": [{"role": "user", "content": [{"type": "image", "source": {}}]}],
        "max_tokens": 5,
        "metadata": {"user_id": "u1"},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "msg_1", "type": "message", "content": []})

    adapter = AnthropicPassthroughAdapter(api_url="https://anthropic.test", transport=httpx.MockTransport(handler))
    call = _call(body, headers={"X-Api-Key": "sk-ant-caller", "anthropic-beta": "tools-2024"})

    async def run():
        return json.loads(await _body(await adapter.handle(call)))

    payload = asyncio.run(run())

    assert payload["id"] == "msg_1"
    assert seen["url"] == "https://anthropic.test/v1/messages"
    assert seen["body"] == {**body, "stream": True}
    assert seen["headers"]["x-api-key"] == "sk-ant-caller"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["headers"]["anthropic-beta"] == "tools-2024"


def test_passthrough_relays_stream_bytes_unchanged() -> None:
    sse = b'event: message_start\ndata: {"type":"message_start"}\n\nevent: message_stop\ndata: {"type":"message_stop"}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=ScriptedStream([sse[:20], sse[20:]]))

    adapter = AnthropicPassthroughAdapter(transport=httpx.MockTransport(handler))

    async def run():
        response = await adapter.handle(
            _call({"model": "claude-x", "messages": [], "max_tokens": 1, "stream": True}, headers={"x-api-key": "k"})
        )
        return await _body(response)

    assert asyncio.run(run()) == sse


def test_passthrough_error_body_is_relayed_verbatim() -> None:
    upstream_error = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
    adapter = AnthropicPassthroughAdapter(
        transport=httpx.MockTransport(lambda request: httpx.Response(529, json=upstream_error))
    )

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(adapter.handle(_call({"model": "claude-x", "messages": [], "max_tokens": 1}, headers={"x-api-key": "k"})))

    assert exc_info.value.status_code == 529
    assert exc_info.value.to_payload() == upstream_error


@pytest.mark.parametrize(("requested", "forwarded"), [(None, True), (True, True), (False, False)])
def test_passthrough_sends_effective_stream_mode(requested, forwarded) -> None:
    seen: dict[str, Any] = {}
    body: dict[str, Any] = {"model": "claude-x", "max_tokens": 5, "messages": [{"role": "user", "content": "hi"}]}
    if requested is not None:
        body["stream"] = requested

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "msg_1", "type": "message", "content": []})

    adapter = AnthropicPassthroughAdapter(transport=httpx.MockTransport(handler))

    async def run():
        await _body(await adapter.handle(_call(body, headers={"x-api-key": "k"})))

    asyncio.run(run())

    assert seen["body"]["stream"] is forwarded


def test_google_project_lookup_timeout_is_typed(settings, token_store) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1internal:loadCodeAssist"
        raise httpx.ReadTimeout("slow", request=request)

    adapter = _google_adapter(settings, token_store, handler)
    call = _call({"model": "gemini-3-flash", "messages": [{"role": "user", "content": "x"}], "max_tokens": 5})

    with pytest.raises(UpstreamTimeoutError) as exc_info:
        asyncio.run(adapter.handle(call))

    assert exc_info.value.provider == "google-antigravity"
    assert exc_info.value.status_code == 504
    assert adapter.project_id is None


class _BrokenTranslator(OpenAIStreamTranslator):
    def parse_chunk(self, payload: dict[str, Any]):
        raise KeyError("choices")


def test_translation_failure_ends_stream_with_error_event() -> None:
    upstream = ScriptedStream([b'data: {"choices":[{"delta":{"content":"x"}}]}\n\n'])
    events = EventLogger()

    async def run():
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=upstream)
            )
        ) as client:
            response = await client.send(client.build_request("POST", "https://openai.test/chat"), stream=True)
            chunks = [
                chunk
                async for chunk in relay_stream(
                    response,
                    client,
                    call=_call({"model": "gpt-4o"}),
                    provider="openai-codex",
                    events=events,
                    translator=_BrokenTranslator("gpt-4o"),
                )
            ]
        return b"".join(chunks)

    frames = _frames(asyncio.run(run()))

    assert [name for name, _ in frames] == ["message_start", "content_block_start", "error"]
    assert frames[-1][1]["error"]["type"] == "api_error"
    assert upstream.closed
    assert [event.name for event in events.list_events("provider_call")] == ["stream_error"]


def test_unexpected_chunk_shapes_are_skipped(settings, token_store) -> None:
    sse = (
        b'data: {"choices":{"0":{"delta":{"content":"odd"}}}}\n\n'
        b'data: {"choices":[{"delta":{"content":"ok"},"finish_reason":"stop"}]}\n\n'
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=ScriptedStream([sse]))

    adapter = _openai_adapter(settings, token_store, handler)

    async def run():
        response = await adapter.handle(_call({"model": "gpt-4o", "messages": [], "max_tokens": 1}))
        return await _body(response)

    frames = _frames(asyncio.run(run()))

    assert [data["delta"]["text"] for name, data in frames if name == "content_block_delta"] == ["ok"]
    assert frames[-1][0] == "message_stop"
