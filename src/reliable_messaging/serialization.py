"""JsonMessageSerializer — JSON roundtrip with MessageTypeRegistry hydration."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, overload

from pydantic import ValidationError

from .envelope import MessageEnvelope
from .exceptions import MalformedPayloadError, MessagingSerializationError

if TYPE_CHECKING:
    from .messages import M, BaseMessage, MessageTypeRegistry

JSON_CONTENT_TYPE = "application/json"


def _json_serializer(obj: Any) -> Any:
    """Serialize datetime and other non-JSON types."""
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonMessageSerializer:
    """Serialize typed messages to JSON envelope bytes and back.

    Uses a MessageTypeRegistry to resolve the target class when
    ``deserialize`` is called without one.
    """

    content_type = JSON_CONTENT_TYPE

    def __init__(self, registry: MessageTypeRegistry | None = None) -> None:
        """Optionally pass a shared MessageTypeRegistry for untyped decoding."""
        self._registry = registry

    @property
    def registry(self) -> MessageTypeRegistry | None:
        return self._registry

    def serialize(self, message: BaseMessage) -> bytes:
        """Encode *message* as a JSON envelope."""
        try:
            envelope = MessageEnvelope.wrap(message)
            data = envelope.model_dump(mode="json")
            return json.dumps(data, default=_json_serializer).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e

    def decode_envelope(self, raw: bytes) -> MessageEnvelope:
        """Decode JSON bytes to a MessageEnvelope.

        Empty input is always malformed; it never decodes to a default value.
        """
        if not raw:
            raise MalformedPayloadError("Empty payload")
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedPayloadError(f"Payload is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedPayloadError(
                f"Expected a JSON object, got {type(data).__name__}"
            )
        try:
            return MessageEnvelope.model_validate(data)
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid envelope: {e}") from e

    @overload
    def deserialize(self, raw: bytes, message_type: type[M]) -> M: ...

    @overload
    def deserialize(self, raw: bytes, message_type: None = None) -> BaseMessage: ...

    def deserialize(
        self, raw: bytes, message_type: type[BaseMessage] | None = None
    ) -> BaseMessage:
        """Decode bytes to a typed message.

        When *message_type* is omitted the class is resolved from the
        envelope's ``message_type`` through the registry.
        """
        envelope = self.decode_envelope(raw)
        target = message_type or self._resolve(envelope.message_type)
        try:
            return envelope.unwrap(target)
        except ValidationError as e:
            raise MalformedPayloadError(
                f"Payload does not match {target.__name__}: {e}"
            ) from e

    def _resolve(self, message_type: str) -> type[BaseMessage]:
        if self._registry is None:
            raise MalformedPayloadError(
                f"Cannot resolve message type {message_type!r}: no registry configured"
            )
        cls = self._registry.get(message_type)
        if cls is None:
            raise MalformedPayloadError(f"Unknown message type {message_type!r}")
        return cls
