"""Topology descriptor — exchanges, queues, bindings and the dead-letter pair.

Built once at startup from settings and read-only afterwards; it can be read
concurrently without locking.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import TopologyError
from .messages import BaseCommand, BaseEvent, default_routing_key, message_type_name

if TYPE_CHECKING:
    from .messages import BaseMessage
    from .settings import MessagingSettings

DEFAULT_EXCHANGE = ""
EVENTS_EXCHANGE_KEY = "events"
COMMANDS_EXCHANGE_KEY = "commands"

# Idle delay-bucket queues are removed by the broker after this long.
DELAY_QUEUE_IDLE_MS = 60_000


class ExchangeType(str, enum.Enum):
    TOPIC = "topic"
    DIRECT = "direct"
    FANOUT = "fanout"
    HEADERS = "headers"


class ExchangeDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: ExchangeType = ExchangeType.TOPIC
    durable: bool = True
    auto_delete: bool = False


class QueueDefinition(BaseModel):
    """A queue and its single binding.

    ``exchange`` may be the logical key of an exchange in the topology or the
    exchange's broker name.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    exchange: str = Field(..., min_length=1)
    routing_key: str = "#"
    dead_letter: bool = True
    arguments: dict[str, Any] = Field(default_factory=dict)


class DeadLetterDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    exchange_name: str = Field(default="dead-letter", min_length=1)
    queue_name: str = Field(default="dead-letters", min_length=1)
    routing_key: str = Field(default="dead-letter", min_length=1)
    message_ttl: int | None = Field(
        default=86_400_000, ge=1, description="Milliseconds a dead letter is kept"
    )


class RouteDefinition(BaseModel):
    """Default destination for one message type."""

    model_config = ConfigDict(frozen=True)

    exchange: str
    routing_key: str


def default_exchanges() -> dict[str, ExchangeDefinition]:
    return {
        COMMANDS_EXCHANGE_KEY: ExchangeDefinition(name="commands"),
        EVENTS_EXCHANGE_KEY: ExchangeDefinition(name="events"),
    }


class Topology(BaseModel):
    """Declarative description of the broker objects used by the application."""

    model_config = ConfigDict(frozen=True)

    exchanges: dict[str, ExchangeDefinition] = Field(default_factory=default_exchanges)
    queues: dict[str, QueueDefinition] = Field(default_factory=dict)
    dead_letter: DeadLetterDefinition = Field(default_factory=DeadLetterDefinition)
    routes: dict[str, RouteDefinition] = Field(default_factory=dict)
    delay_queue_prefix: str = Field(default="delayed", min_length=1)

    @model_validator(mode="after")
    def _check_consistency(self) -> Topology:
        seen: set[str] = set()
        for queue in self.queues.values():
            if queue.name in seen:
                raise TopologyError(f"Duplicate queue name {queue.name!r}")
            seen.add(queue.name)
        if self.dead_letter.enabled and self.dead_letter.queue_name in seen:
            raise TopologyError(
                f"Queue {self.dead_letter.queue_name!r} clashes with the "
                "dead-letter queue"
            )
        for key, queue in self.queues.items():
            if self._find_exchange(queue.exchange) is None:
                raise TopologyError(
                    f"Queue {key!r} is bound to unknown exchange {queue.exchange!r}"
                )
        for type_name, route in self.routes.items():
            if self._find_exchange(route.exchange) is None:
                raise TopologyError(
                    f"Route for {type_name!r} targets unknown exchange "
                    f"{route.exchange!r}"
                )
        return self

    @classmethod
    def from_settings(cls, settings: MessagingSettings) -> Topology:
        return cls(
            exchanges=dict(settings.exchanges),
            queues=dict(settings.queues),
            dead_letter=settings.dead_letter,
            routes=dict(settings.routes),
            delay_queue_prefix=settings.delay_queue_prefix,
        )

    def _find_exchange(self, ref: str) -> ExchangeDefinition | None:
        if ref in self.exchanges:
            return self.exchanges[ref]
        for exchange in self.exchanges.values():
            if exchange.name == ref:
                return exchange
        return None

    def exchange(self, ref: str) -> ExchangeDefinition:
        """Return the exchange for a logical key or broker name."""
        found = self._find_exchange(ref)
        if found is None:
            raise TopologyError(f"Unknown exchange {ref!r}")
        return found

    def exchange_name(self, ref: str) -> str:
        """Resolve a logical key or name to the broker exchange name.

        The default exchange and the dead-letter exchange are always valid.
        """
        if ref == DEFAULT_EXCHANGE:
            return DEFAULT_EXCHANGE
        if self.dead_letter.enabled and ref == self.dead_letter.exchange_name:
            return ref
        return self.exchange(ref).name

    def queue(self, ref: str) -> QueueDefinition:
        """Return the queue for a logical key or broker name."""
        if ref in self.queues:
            return self.queues[ref]
        for queue in self.queues.values():
            if queue.name == ref:
                return queue
        raise TopologyError(f"Unknown queue {ref!r}")

    def queue_arguments(self, queue: QueueDefinition) -> dict[str, Any]:
        """Declaration arguments, including dead-letter routing when enabled."""
        arguments = dict(queue.arguments)
        if queue.dead_letter and self.dead_letter.enabled:
            arguments["x-dead-letter-exchange"] = self.dead_letter.exchange_name
            arguments["x-dead-letter-routing-key"] = self.dead_letter.routing_key
        return arguments

    def route_for(self, message: BaseMessage) -> tuple[str, str]:
        """Default (exchange name, routing key) for *message*."""
        route = self.routes.get(message_type_name(message))
        if route is not None:
            return self.exchange_name(route.exchange), route.routing_key
        if isinstance(message, BaseEvent):
            key = EVENTS_EXCHANGE_KEY
        elif isinstance(message, BaseCommand):
            key = COMMANDS_EXCHANGE_KEY
        else:
            raise TopologyError(
                f"No route configured for {message_type_name(message)!r}"
            )
        return self.exchange_name(key), default_routing_key(message)

    def delay_queue_name(self, exchange: str, routing_key: str, delay_ms: int) -> str:
        target = exchange or "default"
        return f"{self.delay_queue_prefix}.{target}.{routing_key}.{delay_ms}ms"

    def delay_queue_arguments(
        self, exchange: str, routing_key: str, delay_ms: int
    ) -> dict[str, Any]:
        """TTL-plus-dead-letter arguments that forward to the real target."""
        return {
            "x-message-ttl": delay_ms,
            "x-dead-letter-exchange": exchange,
            "x-dead-letter-routing-key": routing_key,
            "x-expires": delay_ms + DELAY_QUEUE_IDLE_MS,
        }
