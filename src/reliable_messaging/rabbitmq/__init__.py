"""RabbitMQ transport: connection manager, publisher, consumer and topology."""

from __future__ import annotations

from .connection import RabbitMQConnectionManager
from .consumer import ConsumerState, DeliveryOutcome, MessageConsumer
from .publisher import MessagePublisher
from .topology import declare_delay_queue, declare_topology

__all__ = [
    "ConsumerState",
    "DeliveryOutcome",
    "MessageConsumer",
    "MessagePublisher",
    "RabbitMQConnectionManager",
    "declare_delay_queue",
    "declare_topology",
]
