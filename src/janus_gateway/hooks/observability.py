from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .security import mask_sensitive_text

logger = logging.getLogger("janus_gateway.events")


@dataclass
class HookEvent:
    at: datetime
    kind: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


class EventLogger:
    def __init__(self, max_events: int = 1000) -> None:
        self._events: deque[HookEvent] = deque(maxlen=max(1, max_events))

    def record(self, kind: str, name: str, payload: dict[str, Any] | None = None) -> None:
        event = HookEvent(
            at=datetime.now(timezone.utc),
            kind=kind,
            name=name,
            payload=_mask_payload(payload or {}),
        )
        self._events.append(event)
        logger.info("%s.%s %s", kind, name, event.payload)

    def on_credential(self, provider: str, phase: str, **details: Any) -> None:
        self.record("credential", phase, {"provider": provider, **details})

    def on_provider_call(self, provider: str, model: str, phase: str, **details: Any) -> None:
        self.record("provider_call", phase, {"provider": provider, "model": model, **details})

    def on_stream_parse_error(self, provider: str, line: str) -> None:
        self.record("stream", "chunk_parse_error", {"provider": provider, "line": line[:200]})

    def list_events(self, kind: str | None = None) -> list[HookEvent]:
        if kind is None:
            return list(self._events)
        return [event for event in self._events if event.kind == kind]


def _mask_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        key: mask_sensitive_text(value) if isinstance(value, str) else value
        for key, value in payload.items()
    }
