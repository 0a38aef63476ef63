"""Deterministic helpers: control-channel codec and session persistence."""

from .control_channel import ControlChannelCodec, is_complete_payload, parse_payload, repair_payload
from .session_store import InMemorySessionStore, JsonFileSessionStore, SessionStore

__all__ = [
    "ControlChannelCodec",
    "InMemorySessionStore",
    "JsonFileSessionStore",
    "SessionStore",
    "is_complete_payload",
    "parse_payload",
    "repair_payload",
]
