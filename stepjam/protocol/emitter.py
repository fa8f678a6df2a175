"""Typed WebSocket message emitter and parser — protocol-enforced serialization.

Every frame the server sends passes through ``emit()``.  Entry points:

  ``emit(ServerMessage)``          — serialize a typed message to a JSON text frame.
  ``decode_frame(text)``           — size-check and JSON-decode an inbound frame.
  ``parse_client_message(dict)``   — validate an inbound dict into the concrete
                                     ClientMessage subclass.
  ``parse_server_message(dict)``   — inverse of ``emit``; used by client replicas
                                     and tests that need typed access.

Handlers construct typed ServerMessage subclasses directly; raw-dict emission
is forbidden.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from stepjam.config import MAX_MESSAGE_BYTES
from stepjam.core.errors import LiveSessionError
from stepjam.protocol.messages import ClientMessage, ServerMessage
from stepjam.protocol.registry import CLIENT_MESSAGE_REGISTRY, SERVER_MESSAGE_REGISTRY

logger = logging.getLogger(__name__)

# Wire error codes carried by ErrorMessage.code
MESSAGE_TOO_LARGE = "MESSAGE_TOO_LARGE"
INVALID_JSON = "INVALID_JSON"
INVALID_MESSAGE = "INVALID_MESSAGE"
SESSION_PUBLISHED = "SESSION_PUBLISHED"


class ProtocolSerializationError(LiveSessionError):
    """Raised when an inbound frame fails protocol validation.

    ``code`` is the wire error code to report back to the sender.
    ``message_type`` and ``field`` are filled in when the frame parsed far
    enough to know them, so mutation failures can be reported as
    ``mutation_rejected`` rather than a bare ``error``.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = INVALID_MESSAGE,
        message_type: str | None = None,
        field: str | None = None,
        seq: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message_type = message_type
        self.field = field
        self.seq = seq


def serialize_message(message: ServerMessage) -> dict[str, Any]:
    """Dump a ServerMessage to its camelCase wire dict."""
    if not isinstance(message, ServerMessage):
        raise TypeError(
            f"emit() requires a ServerMessage, got {type(message).__name__}."
        )
    if message.type not in SERVER_MESSAGE_REGISTRY:
        raise ValueError(
            f"Unknown message type '{message.type}'. "
            f"Register it in stepjam/protocol/registry.py."
        )
    return message.model_dump(by_alias=True, exclude_none=True, mode="json")


def emit(message: ServerMessage) -> str:
    """Serialize a ServerMessage to a JSON text frame.

    Raises TypeError for non-ServerMessage arguments.
    Raises ValueError for unregistered message types.
    """
    data = serialize_message(message)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def _is_utf8(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _unencodable_path(value: Any, path: tuple[str, ...] = ()) -> tuple[str, ...] | None:
    """Path to the first string that cannot be encoded as UTF-8 (lone surrogates)."""
    if isinstance(value, str):
        return None if _is_utf8(value) else path
    if isinstance(value, dict):
        for key, item in value.items():
            if not _is_utf8(key):
                return path
            found = _unencodable_path(item, (*path, key))
            if found is not None:
                return found
    elif isinstance(value, list):
        for index, item in enumerate(value):
            found = _unencodable_path(item, (*path, str(index)))
            if found is not None:
                return found
    return None


def decode_frame(frame: str | bytes, max_bytes: int = MAX_MESSAGE_BYTES) -> dict[str, Any]:
    """Size-check and JSON-decode one inbound frame.

    Raises ``ProtocolSerializationError`` with code ``MESSAGE_TOO_LARGE``,
    ``INVALID_JSON`` or ``INVALID_MESSAGE`` (not a JSON object, or text
    that cannot be stored as UTF-8).
    """
    try:
        raw = frame.encode("utf-8") if isinstance(frame, str) else frame
    except UnicodeEncodeError as exc:
        raise ProtocolSerializationError(
            f"Invalid JSON: {exc.reason}", code=INVALID_JSON
        ) from exc
    if len(raw) > max_bytes:
        raise ProtocolSerializationError(
            f"Message exceeds {max_bytes} bytes",
            code=MESSAGE_TOO_LARGE,
        )
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolSerializationError(
            f"Invalid JSON: {exc}", code=INVALID_JSON
        ) from exc
    if not isinstance(data, dict):
        raise ProtocolSerializationError("Message must be a JSON object")

    bad_path = _unencodable_path(data)
    if bad_path is not None:
        message_type = data.get("type")
        raw_seq = data.get("seq")
        field = ".".join(bad_path) or None
        raise ProtocolSerializationError(
            f"Field '{field or 'message'}' is not valid UTF-8 text",
            message_type=message_type if isinstance(message_type, str) and _is_utf8(message_type) else None,
            field=field,
            seq=raw_seq if isinstance(raw_seq, int) and not isinstance(raw_seq, bool) else None,
        )
    return data


def _first_error_field(exc: ValidationError) -> str | None:
    errors = exc.errors()
    if not errors:
        return None
    loc = errors[0].get("loc") or ()
    return ".".join(str(part) for part in loc) or None


def parse_client_message(data: Mapping[str, Any]) -> ClientMessage:
    """Deserialize an inbound dict into the correct ClientMessage subclass.

    Raises ``ProtocolSerializationError`` for unknown or malformed messages.
    """
    message_type = data.get("type")
    if not isinstance(message_type, str):
        raise ProtocolSerializationError("Message missing 'type' field")

    raw_seq = data.get("seq")
    seq = raw_seq if isinstance(raw_seq, int) and not isinstance(raw_seq, bool) else None

    model_class = CLIENT_MESSAGE_REGISTRY.get(message_type)
    if model_class is None:
        raise ProtocolSerializationError(
            f"Unknown message type '{message_type}'",
            message_type=message_type,
            seq=seq,
        )
    try:
        return model_class.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors()
        detail = errors[0]["msg"] if errors else str(exc)
        raise ProtocolSerializationError(
            f"Message '{message_type}' failed validation: {detail}",
            message_type=message_type,
            field=_first_error_field(exc),
            seq=seq,
        ) from exc


def parse_server_message(data: Mapping[str, Any]) -> ServerMessage:
    """Deserialize a wire dict back into the correct ServerMessage subclass.

    Inverse of ``emit``.  Raises ``ProtocolSerializationError`` for unknown
    or malformed messages.
    """
    message_type = data.get("type")
    if not isinstance(message_type, str):
        raise ProtocolSerializationError("Message missing 'type' field")

    model_class = SERVER_MESSAGE_REGISTRY.get(message_type)
    if model_class is None:
        raise ProtocolSerializationError(
            f"Unknown message type '{message_type}'. Cannot deserialize.",
            message_type=message_type,
        )
    try:
        return model_class.model_validate(data)
    except ValidationError as exc:
        raise ProtocolSerializationError(
            f"Message '{message_type}' failed deserialization: {exc}",
            message_type=message_type,
            field=_first_error_field(exc),
        ) from exc
