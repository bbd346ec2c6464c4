from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from ..errors import TranspilerError
from .common import (
    as_token_count,
    build_message,
    clean_json_schema,
    flatten_content,
    is_web_search_tool,
    join_system,
    map_model,
    map_stop_reason,
    put_if_present,
)
from .stream import ChunkSignal, StreamTranslator

logger = logging.getLogger(__name__)

OPENAI_MODEL_PATTERN = re.compile(r"^(gpt-|chatgpt-|o[1-9](-|$))")
DEFAULT_OPENAI_MODEL = "gpt-4o"
OPENAI_MODEL_MAP: dict[str, str] = {
    "claude-3-5-sonnet": "gpt-4o",
    "claude-3-7-sonnet": "gpt-4o",
    "claude-sonnet-4": "gpt-4o",
    "claude-3-opus": "gpt-4o",
    "claude-opus-4": "gpt-4o",
    "claude-3-sonnet": "gpt-4o",
    "claude-3-haiku": "gpt-4o-mini",
    "claude-3-5-haiku": "gpt-4o-mini",
    "claude-haiku-4": "gpt-4o-mini",
}
OPENAI_STOP_REASONS: dict[str, str] = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "refusal",
}


def is_openai_model(model: str) -> bool:
    return bool(OPENAI_MODEL_PATTERN.match(model)) or "codex" in model


def map_openai_model(model: str) -> str:
    return map_model(model, OPENAI_MODEL_MAP, DEFAULT_OPENAI_MODEL, native=is_openai_model)


def convert_request(request: Mapping[str, Any], *, stream: bool) -> dict[str, Any]:
    messages: list[dict[str, str]] = []
    system = join_system(request.get("system"))
    if system is not None:
        messages.append({"role": "system", "content": system})

    for message in request.get("messages") or []:
        role = message.get("role") if isinstance(message, Mapping) else None
        if role not in {"user", "assistant"}:
            raise TranspilerError(f"Unsupported message role: {role!r}")
        messages.append({"role": role, "content": flatten_content(message.get("content"))})

    payload: dict[str, Any] = {
        "model": map_openai_model(str(request.get("model") or "")),
        "messages": messages,
        "stream": stream,
    }
    put_if_present(payload, request, "max_tokens")
    put_if_present(payload, request, "temperature")
    put_if_present(payload, request, "top_p")
    put_if_present(payload, request, "stop_sequences", "stop")

    tools = _convert_tools(request.get("tools"))
    if tools:
        payload["tools"] = tools
    return payload


def _convert_tools(tools: Any) -> list[dict[str, Any]]:
    if not tools:
        return []
    if not isinstance(tools, list):
        raise TranspilerError("tools must be a list")
    converted: list[dict[str, Any]] = []
    for tool in tools:
        if not isinstance(tool, Mapping) or not tool.get("name"):
            raise TranspilerError("each tool needs a name")
        if is_web_search_tool(tool):
            logger.debug("dropping web search tool %s for OpenAI", tool.get("name"))
            continue
        function: dict[str, Any] = {"name": tool["name"]}
        if tool.get("description"):
            function["description"] = tool["description"]
        if tool.get("input_schema") is not None:
            function["parameters"] = clean_json_schema(tool["input_schema"])
        converted.append({"type": "function", "function": function})
    return converted


def convert_response(payload: Mapping[str, Any], model: str) -> dict[str, Any]:
    choices = payload.get("choices") or []
    choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], Mapping) else {}
    message = choice.get("message") or {}
    content = message.get("content") if isinstance(message, Mapping) else None
    if isinstance(content, list):
        content = flatten_content(content)
    usage = payload.get("usage") or {}
    return build_message(
        text=content if isinstance(content, str) else "",
        model=model,
        stop_reason=map_stop_reason(choice.get("finish_reason"), OPENAI_STOP_REASONS),
        input_tokens=usage.get("prompt_tokens"),
        output_tokens=usage.get("completion_tokens"),
    )


class OpenAIStreamTranslator(StreamTranslator):
    provider = "openai-codex"
    stop_reasons = OPENAI_STOP_REASONS

    def parse_chunk(self, payload: dict[str, Any]) -> ChunkSignal | None:
        signal = ChunkSignal()
        usage = payload.get("usage")
        if isinstance(usage, Mapping) and usage.get("completion_tokens") is not None:
            signal.output_tokens = as_token_count(usage.get("completion_tokens"))
        choices = payload.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
            return signal
        choice = choices[0]
        delta = choice.get("delta") or {}
        if isinstance(delta, Mapping) and isinstance(delta.get("content"), str):
            signal.text = delta["content"]
        if choice.get("finish_reason"):
            signal.finish_reason = str(choice["finish_reason"])
        return signal
