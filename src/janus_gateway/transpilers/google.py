from __future__ import annotations

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

DEFAULT_GOOGLE_MODEL = "gemini-3-flash"
GOOGLE_MODEL_MAP: dict[str, str] = {
    "claude-3-5-sonnet": "gemini-3-flash",
    "claude-3-7-sonnet": "gemini-3-flash",
    "claude-sonnet-4": "gemini-3-flash",
    "claude-3-sonnet": "gemini-3-flash",
    "claude-3-opus": "gemini-3-pro",
    "claude-opus-4": "gemini-3-pro",
    "claude-3-haiku": "gemini-2.5-flash",
    "claude-3-5-haiku": "gemini-2.5-flash",
    "claude-haiku-4": "gemini-2.5-flash",
}
GOOGLE_STOP_REASONS: dict[str, str] = {
    "STOP": "end_turn",
    "FINISHED": "end_turn",
    "INTERRUPTED": "end_turn",
    "MAX_TOKENS": "max_tokens",
    "STOP_SEQUENCE": "stop_sequence",
    "SAFETY": "refusal",
    "RECITATION": "refusal",
    "BLOCKLIST": "refusal",
    "PROHIBITED_CONTENT": "refusal",
    "SPII": "refusal",
}
GENERATION_CONFIG_KEYS = (
    ("max_tokens", "maxOutputTokens"),
    ("temperature", "temperature"),
    ("top_p", "topP"),
    ("top_k", "topK"),
    ("stop_sequences", "stopSequences"),
)


def is_google_model(model: str) -> bool:
    return model.startswith("gemini") or "antigravity" in model


def map_google_model(model: str) -> str:
    return map_model(
        model,
        GOOGLE_MODEL_MAP,
        DEFAULT_GOOGLE_MODEL,
        native=lambda name: name.startswith("gemini"),
    )


def convert_request(request: Mapping[str, Any]) -> dict[str, Any]:
    contents: list[dict[str, Any]] = []
    for message in request.get("messages") or []:
        role = message.get("role") if isinstance(message, Mapping) else None
        if role not in {"user", "assistant"}:
            raise TranspilerError(f"Unsupported message role: {role!r}")
        contents.append(
            {
                "role": "model" if role == "assistant" else "user",
                "parts": [{"text": flatten_content(message.get("content"))}],
            }
        )

    payload: dict[str, Any] = {"contents": contents}
    generation_config: dict[str, Any] = {}
    for source_key, target_key in GENERATION_CONFIG_KEYS:
        put_if_present(generation_config, request, source_key, target_key)
    if generation_config:
        payload["generationConfig"] = generation_config

    system = join_system(request.get("system"))
    if system is not None:
        payload["systemInstruction"] = {"parts": [{"text": system}]}

    tools = _convert_tools(request.get("tools"))
    if tools:
        payload["tools"] = tools
    return payload


def _convert_tools(tools: Any) -> list[dict[str, Any]]:
    if not tools:
        return []
    if not isinstance(tools, list):
        raise TranspilerError("tools must be a list")
    declarations: list[dict[str, Any]] = []
    grounding = False
    for tool in tools:
        if not isinstance(tool, Mapping) or not tool.get("name"):
            raise TranspilerError("each tool needs a name")
        if is_web_search_tool(tool):
            grounding = True
            continue
        declaration: dict[str, Any] = {"name": tool["name"]}
        if tool.get("description"):
            declaration["description"] = tool["description"]
        if tool.get("input_schema") is not None:
            declaration["parameters"] = clean_json_schema(tool["input_schema"])
        declarations.append(declaration)

    converted: list[dict[str, Any]] = []
    if declarations:
        converted.append({"functionDeclarations": declarations})
    if grounding:
        converted.append({"googleSearch": {}})
    return converted


def unwrap_response(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    nested = payload.get("response")
    if isinstance(nested, Mapping):
        return nested
    return payload


def _candidate_text(candidate: Mapping[str, Any]) -> str:
    content = candidate.get("content") or {}
    parts = content.get("parts") if isinstance(content, Mapping) else None
    if not isinstance(parts, list):
        return ""
    return "".join(
        part["text"]
        for part in parts
        if isinstance(part, Mapping) and isinstance(part.get("text"), str) and not part.get("thought")
    )


def _first_candidate(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    candidates = payload.get("candidates") or []
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], Mapping):
        return candidates[0]
    return {}


def convert_response(payload: Mapping[str, Any], model: str) -> dict[str, Any]:
    body = unwrap_response(payload)
    candidate = _first_candidate(body)
    usage = body.get("usageMetadata") or {}
    return build_message(
        text=_candidate_text(candidate),
        model=model,
        stop_reason=map_stop_reason(candidate.get("finishReason"), GOOGLE_STOP_REASONS),
        input_tokens=usage.get("promptTokenCount"),
        output_tokens=usage.get("candidatesTokenCount"),
    )


class GoogleStreamTranslator(StreamTranslator):
    provider = "google-antigravity"
    stop_reasons = GOOGLE_STOP_REASONS

    def parse_chunk(self, payload: dict[str, Any]) -> ChunkSignal | None:
        body = unwrap_response(payload)
        signal = ChunkSignal()
        usage = body.get("usageMetadata")
        if isinstance(usage, Mapping) and usage.get("candidatesTokenCount") is not None:
            signal.output_tokens = as_token_count(usage.get("candidatesTokenCount"))
        candidate = _first_candidate(body)
        if not candidate:
            return signal
        signal.text = _candidate_text(candidate) or None
        if candidate.get("finishReason"):
            signal.finish_reason = str(candidate["finishReason"])
        return signal
