from __future__ import annotations

import secrets
from typing import Any, Callable, Mapping

from ..errors import TranspilerError

SCHEMA_DROP_KEYS = frozenset(
    {
        "$schema",
        "$id",
        "$ref",
        "$defs",
        "definitions",
        "additionalProperties",
        "examples",
        "default",
        "title",
        "format",
        "strict",
    }
)

WEB_SEARCH_TOOL_NAMES = frozenset({"web_search", "google_search"})


def flatten_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
    raise TranspilerError("Unsupported message content format")


def join_system(system: Any) -> str | None:
    if system is None:
        return None
    if isinstance(system, str):
        return system or None
    if isinstance(system, list):
        parts = []
        for block in system:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            else:
                raise TranspilerError("Unsupported system content format")
        return "\n".join(parts) or None
    raise TranspilerError("Unsupported system content format")


def clean_json_schema(schema: Any) -> Any:
    if isinstance(schema, list):
        return [clean_json_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key in SCHEMA_DROP_KEYS:
            continue
        if key == "const":
            cleaned["enum"] = [value]
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: clean_json_schema(prop) for name, prop in value.items()}
            continue
        cleaned[key] = clean_json_schema(value)
    return cleaned


def is_web_search_tool(tool: Mapping[str, Any]) -> bool:
    tool_type = str(tool.get("type") or "")
    return tool.get("name") in WEB_SEARCH_TOOL_NAMES or tool_type.startswith("web_search")


def map_model(
    model: str,
    table: Mapping[str, str],
    default: str,
    *,
    native: Callable[[str], bool],
) -> str:
    if native(model):
        return model
    for prefix, target in table.items():
        if model.startswith(prefix):
            return target
    return default


def map_stop_reason(reason: Any, table: Mapping[str, str]) -> str | None:
    if reason is None or reason == "":
        return None
    return table.get(str(reason), "end_turn")


def new_message_id() -> str:
    return f"msg_{secrets.token_hex(12)}"


def build_message(
    *,
    text: str,
    model: str,
    stop_reason: str | None,
    input_tokens: Any = 0,
    output_tokens: Any = 0,
    message_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": message_id or new_message_id(),
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
        "model": model,
        "stop_reason": stop_reason,
        "stop_sequence": None,
        "usage": {
            "input_tokens": as_token_count(input_tokens),
            "output_tokens": as_token_count(output_tokens),
        },
    }


def as_token_count(value: Any) -> int:
    try:
        count = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, count)


def put_if_present(target: dict[str, Any], source: Mapping[str, Any], key: str, target_key: str | None = None) -> None:
    if key in source and source[key] is not None:
        target[target_key or key] = source[key]
