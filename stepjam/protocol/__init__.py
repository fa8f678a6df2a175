"""StepJam live wire protocol — messages, registry, emitter."""
from __future__ import annotations

from stepjam.protocol.emitter import (
    ProtocolSerializationError,
    decode_frame,
    emit,
    parse_client_message,
    parse_server_message,
)
from stepjam.protocol.version import PROTOCOL_VERSION, STEPJAM_VERSION

__all__ = [
    "PROTOCOL_VERSION",
    "ProtocolSerializationError",
    "STEPJAM_VERSION",
    "decode_frame",
    "emit",
    "parse_client_message",
    "parse_server_message",
]
