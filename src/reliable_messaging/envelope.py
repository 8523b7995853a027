"""MessageEnvelope — standard immutable wrapper for transport."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .messages import ENVELOPE_FIELDS, message_type_name

if TYPE_CHECKING:
    from .messages import M, BaseMessage


class MessageEnvelope(BaseModel):
    """Immutable wrapper for messages over the wire.

    Carries the business payload plus the tracing ids of the wrapped
    message. Retry state is never stored here; it travels in broker headers.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    message_type: str = Field(
        ..., min_length=1, description="Registry key, e.g. 'ServerRegistered'"
    )
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    causation_id: str | None = None
    initiated_by: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def wrap(cls, message: BaseMessage) -> MessageEnvelope:
        """Build an envelope from a typed message."""
        return cls(
            message_id=message.message_id,
            message_type=message_type_name(message),
            payload=message.model_dump(mode="json", exclude=set(ENVELOPE_FIELDS)),
            correlation_id=message.correlation_id,
            causation_id=message.causation_id,
            initiated_by=message.initiated_by,
            timestamp=message.created_at,
            metadata=dict(message.metadata),
        )

    def unwrap(self, message_class: type[M]) -> M:
        """Rebuild the typed message; raises pydantic ``ValidationError``."""
        return message_class.model_validate(
            {
                **self.payload,
                "message_id": self.message_id,
                "created_at": self.timestamp,
                "correlation_id": self.correlation_id,
                "causation_id": self.causation_id,
                "initiated_by": self.initiated_by,
                "metadata": self.metadata,
            }
        )
