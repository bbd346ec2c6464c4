"""Canonical <-> provider wire-format conversion."""

from . import google, openai
from .stream import ChunkSignal, StreamEvent, StreamState, StreamTranslator, error_event

__all__ = [
    "ChunkSignal",
    "StreamEvent",
    "StreamState",
    "StreamTranslator",
    "error_event",
    "google",
    "openai",
]
