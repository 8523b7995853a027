"""Message base classes — the canonical envelope carried by every command/event."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .correlation import generate_correlation_id, get_causation_id, get_correlation_id

M = TypeVar("M", bound="BaseMessage")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def message_type_name(message: type[BaseMessage] | BaseMessage) -> str:
    """Return the registry key of a message class or instance."""
    cls = message if isinstance(message, type) else type(message)
    return cls.type_name or cls.__name__


def default_routing_key(message: type[BaseMessage] | BaseMessage) -> str:
    """Dotted snake-case routing key.

    ``ServerRegistered`` becomes ``server.registered``.
    """
    cls = message if isinstance(message, type) else type(message)
    if cls.routing_key is not None:
        return cls.routing_key
    return ".".join(_CAMEL_BOUNDARY.split(message_type_name(cls))).lower()


class BaseMessage(BaseModel):
    """Base class for all messages (commands and events).

    ``message_id`` and ``created_at`` are assigned once at construction and the
    model is frozen. ``correlation_id`` defaults to the ambient correlation
    context, or to a fresh id when there is none; ``causation_id`` defaults to
    the ambient causation id (the message currently being handled).
    """

    model_config = ConfigDict(frozen=True)

    type_name: ClassVar[str | None] = None
    routing_key: ClassVar[str | None] = None

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = Field(default=None, validate_default=True)
    causation_id: str | None = Field(default=None, validate_default=True)
    initiated_by: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("correlation_id")
    @classmethod
    def _ensure_correlation_id(cls, value: str | None) -> str:
        return value or get_correlation_id() or generate_correlation_id()

    @field_validator("causation_id")
    @classmethod
    def _inherit_causation_id(cls, value: str | None) -> str | None:
        return value or get_causation_id()

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def follow_up(self, message_class: type[M], **fields: Any) -> M:
        """Build a message caused by this one.

        The derived message carries the same correlation id and initiator and
        records this message's id as its causation id.
        """
        tracing: dict[str, Any] = {
            "correlation_id": self.correlation_id,
            "causation_id": self.message_id,
            "initiated_by": self.initiated_by,
        }
        tracing.update(fields)
        return message_class(**tracing)


class BaseEvent(BaseMessage):
    """Base class for events.

    ``event_type`` defaults to the message type name; ``version`` is the
    schema version and starts at 1.
    """

    event_type: str = Field(default="", validate_default=True)
    version: int = Field(default=1, ge=1)
    aggregate_id: str | None = None

    @field_validator("event_type")
    @classmethod
    def _default_event_type(cls, value: str) -> str:
        return value or message_type_name(cls)


class BaseCommand(BaseMessage):
    """Base class for commands."""


# Fields owned by the envelope rather than by the message payload.
ENVELOPE_FIELDS = frozenset(
    {
        "message_id",
        "created_at",
        "correlation_id",
        "causation_id",
        "initiated_by",
        "metadata",
    }
)


class MessageTypeRegistry:
    """Registry for mapping ``message_type_name: str`` → ``type[BaseMessage]``.

    Used to reconstruct typed messages from transport payloads.

    **Explicit registration** is required via ``register(cls)``.
    Create instances per application context for isolation.

    Usage::

        registry = MessageTypeRegistry()
        registry.register(ServerRegistered)
        cls = registry.get("ServerRegistered")
    """

    def __init__(self) -> None:
        self._registry: dict[str, type[BaseMessage]] = {}

    def register(
        self, message_class: type[BaseMessage], name: str | None = None
    ) -> None:
        """Register a message class under *name* (defaults to its type name)."""
        self._registry[name or message_type_name(message_class)] = message_class

    def get(self, message_type: str) -> type[BaseMessage] | None:
        """Look up a message class by type name."""
        return self._registry.get(message_type)

    def has(self, message_type: str) -> bool:
        """Return ``True`` if *message_type* is registered."""
        return message_type in self._registry

    def list_registered(self) -> list[str]:
        """Return all registered message type names."""
        return list(self._registry.keys())

    def clear(self) -> None:
        """Remove all registrations (testing utility)."""
        self._registry.clear()
