import pytest

from janus_gateway.errors import TranspilerError
from janus_gateway.transpilers import google as transpiler


def test_convert_request_uses_system_instruction_and_model_role() -> None:
    payload = transpiler.convert_request(
        {
            "model": "gemini-2.5-pro",
            "system": "Be brief.",
            "messages": [
                {"role": "user", "content": "Hello!"},
                {"role": "assistant", "content": [{"type": "text", "text": "Hi"}, {"type": "tool_use", "id": "t"}]},
            ],
            "max_tokens": 256,
            "top_p": 0.9,
        }
    )

    assert payload["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert payload["contents"] == [
        {"role": "user", "parts": [{"text": "Hello!"}]},
        {"role": "model", "parts": [{"text": "Hi"}]},
    ]
    assert payload["generationConfig"] == {"maxOutputTokens": 256, "topP": 0.9}
    assert str(payload).count("Be brief.") == 1


def test_convert_request_joins_multi_part_system_once() -> None:
    payload = transpiler.convert_request(
        {
            "model": "gemini-3-flash",
            "system": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            "messages": [{"role": "user", "content": "x"}],
            "max_tokens": 1,
        }
    )

    assert payload["systemInstruction"]["parts"] == [{"text": "a\nb"}]


def test_convert_request_maps_web_search_to_grounding() -> None:
    payload = transpiler.convert_request(
        {
            "model": "gemini-3-flash",
            "messages": [{"role": "user", "content": "news?"}],
            "max_tokens": 10,
            "tools": [
                {"name": "web_search", "type": "web_search_20250305"},
                {
                    "name": "lookup",
                    "input_schema": {"type": "object", "properties": {"mode": {"const": "fast", "default": "fast"}}},
                },
            ],
        }
    )

    assert payload["tools"] == [
        {
            "functionDeclarations": [
                {"name": "lookup", "parameters": {"type": "object", "properties": {"mode": {"enum": ["fast"]}}}}
            ]
        },
        {"googleSearch": {}},
    ]


def test_convert_request_rejects_unknown_role() -> None:
    with pytest.raises(TranspilerError):
        transpiler.convert_request({"model": "gemini-3-flash", "messages": [{"role": "tool", "content": "x"}]})


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("claude-3-5-sonnet-20241022", "gemini-3-flash"),
        ("claude-opus-4-1", "gemini-3-pro"),
        ("claude-3-haiku-20240307", "gemini-2.5-flash"),
        ("gemini-2.5-pro", "gemini-2.5-pro"),
        ("mystery-model", "gemini-3-flash"),
    ],
)
def test_model_mapping(model: str, expected: str) -> None:
    assert transpiler.map_google_model(model) == expected


def test_convert_response_unwraps_antigravity_envelope() -> None:
    response = transpiler.convert_response(
        {
            "response": {
                "candidates": [{"content": {"role": "model", "parts": [{"text": "Hello from Gemini"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 5},
            }
        },
        "claude-3-5-sonnet-20241022",
    )

    assert response["content"][0]["text"] == "Hello from Gemini"
    assert response["stop_reason"] == "end_turn"
    assert response["usage"] == {"input_tokens": 4, "output_tokens": 5}


@pytest.mark.parametrize(
    ("finish_reason", "expected"),
    [
        ("STOP", "end_turn"),
        ("FINISHED", "end_turn"),
        ("INTERRUPTED", "end_turn"),
        ("MAX_TOKENS", "max_tokens"),
        ("STOP_SEQUENCE", "stop_sequence"),
        ("SAFETY", "refusal"),
        ("RECITATION", "refusal"),
        ("SOMETHING_NEW", "end_turn"),
    ],
)
def test_finish_reason_mapping(finish_reason: str, expected: str) -> None:
    response = transpiler.convert_response(
        {"candidates": [{"content": {"parts": [{"text": "x"}]}, "finishReason": finish_reason}]},
        "gemini-3-flash",
    )

    assert response["stop_reason"] == expected
