from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from ..hooks.observability import EventLogger
from .common import map_stop_reason, new_message_id

logger = logging.getLogger(__name__)

STREAM_DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: dict[str, Any]

    def encode(self) -> bytes:
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n".encode("utf-8")


@dataclass
class ChunkSignal:
    text: str | None = None
    finish_reason: str | None = None
    output_tokens: int | None = None


class StreamState(str, Enum):
    CREATED = "created"
    STREAMING = "streaming"
    FINISHED = "finished"


def error_event(error_type: str, message: str) -> StreamEvent:
    return StreamEvent("error", {"type": "error", "error": {"type": error_type, "message": message}})


class StreamTranslator:
    """
    Incremental provider SSE -> canonical event translator.

    Every call to feed() advances the line buffer and returns the canonical events
    produced so far; close() flushes the tail and terminates the message if the
    provider never sent a finish signal.
    """

    provider = "unknown"
    stop_reasons: Mapping[str, str] = {}

    def __init__(
        self,
        model: str,
        *,
        events: EventLogger | None = None,
        message_id: str | None = None,
    ) -> None:
        self.model = model
        self.message_id = message_id or new_message_id()
        self.events = events
        self.state = StreamState.CREATED
        self.pending = ""
        self.output_tokens = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def parse_chunk(self, payload: dict[str, Any]) -> ChunkSignal | None:
        raise NotImplementedError

    def start(self) -> list[StreamEvent]:
        if self.state != StreamState.CREATED:
            return []
        self.state = StreamState.STREAMING
        return [
            StreamEvent(
                "message_start",
                {
                    "type": "message_start",
                    "message": {
                        "id": self.message_id,
                        "type": "message",
                        "role": "assistant",
                        "content": [],
                        "model": self.model,
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": 0, "output_tokens": 0},
                    },
                },
            ),
            StreamEvent(
                "content_block_start",
                {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            ),
        ]

    def feed(self, data: bytes) -> list[StreamEvent]:
        emitted = self.start()
        self.pending += self._decoder.decode(data)
        lines = self.pending.split("\n")
        self.pending = lines.pop()
        for line in lines:
            emitted.extend(self._process_line(line))
        return emitted

    def close(self) -> list[StreamEvent]:
        emitted = self.start()
        self.pending += self._decoder.decode(b"", final=True)
        if self.pending:
            tail, self.pending = self.pending, ""
            emitted.extend(self._process_line(tail))
        if self.state == StreamState.STREAMING:
            emitted.extend(self._finish("end_turn"))
        return emitted

    @property
    def finished(self) -> bool:
        return self.state == StreamState.FINISHED

    def _process_line(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line.strip() or line.startswith(":"):
            return []
        if not line.startswith("data:"):
            return []
        data = line[5:].strip()
        if not data or data == STREAM_DONE_SENTINEL:
            return []
        try:
            payload = json.loads(data)
        except ValueError:
            logger.warning("skipping unparsable %s stream chunk: %s", self.provider, data[:200])
            if self.events is not None:
                self.events.on_stream_parse_error(self.provider, data)
            return []
        if not isinstance(payload, dict):
            return []
        signal = self.parse_chunk(payload)
        if signal is None or self.state == StreamState.FINISHED:
            return []

        emitted: list[StreamEvent] = []
        if signal.output_tokens is not None:
            self.output_tokens = signal.output_tokens
        if signal.text:
            emitted.append(
                StreamEvent(
                    "content_block_delta",
                    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": signal.text}},
                )
            )
        if signal.finish_reason:
            emitted.extend(self._finish(map_stop_reason(signal.finish_reason, self.stop_reasons) or "end_turn"))
        return emitted

    def _finish(self, stop_reason: str) -> list[StreamEvent]:
        self.state = StreamState.FINISHED
        return [
            StreamEvent("content_block_stop", {"type": "content_block_stop", "index": 0}),
            StreamEvent(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": stop_reason, "stop_sequence": None},
                    "usage": {"output_tokens": self.output_tokens},
                },
            ),
            StreamEvent("message_stop", {"type": "message_stop"}),
        ]
