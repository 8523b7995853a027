"""Reliable publish/consume messaging over RabbitMQ with retry and dead-lettering."""

from __future__ import annotations

from .correlation import correlation_scope, get_correlation_id
from .dead_letter import DeadLetter, DeadLetterHandler, DeadLetterReason
from .envelope import MessageEnvelope
from .exceptions import (
    BatchItemFailure,
    BatchPublishError,
    BrokerConnectionRefusedError,
    BrokerUnavailableError,
    HandlerError,
    HandlerRegistrationError,
    MalformedPayloadError,
    MessagingError,
    MessagingSerializationError,
    PublishConfirmError,
    TopologyError,
)
from .handlers import HandlerRegistry, IMessageHandler
from .health import (
    HealthCheckResult,
    HealthRegistry,
    HealthStatus,
    MessageQueueHealthCheck,
)
from .host import ConsumerHost
from .idempotency import IdempotencyFilter
from .memory import InMemoryBroker, InMemoryConnectionManager
from .messages import BaseCommand, BaseEvent, BaseMessage, MessageTypeRegistry
from .metrics import MessagingMetrics
from .ports import IBackgroundWorker, IMessagePublisher
from .rabbitmq import (
    ConsumerState,
    DeliveryOutcome,
    MessageConsumer,
    MessagePublisher,
    RabbitMQConnectionManager,
)
from .retry import HeaderRedeliveryInspector, RetryPolicy
from .serialization import JsonMessageSerializer
from .settings import MessagingSettings
from .topology import (
    DeadLetterDefinition,
    ExchangeDefinition,
    ExchangeType,
    QueueDefinition,
    RouteDefinition,
    Topology,
)

__all__ = [
    "BaseCommand",
    "BaseEvent",
    "BaseMessage",
    "BatchItemFailure",
    "BatchPublishError",
    "BrokerConnectionRefusedError",
    "BrokerUnavailableError",
    "ConsumerHost",
    "ConsumerState",
    "DeadLetter",
    "DeadLetterDefinition",
    "DeadLetterHandler",
    "DeadLetterReason",
    "DeliveryOutcome",
    "ExchangeDefinition",
    "ExchangeType",
    "HandlerError",
    "HandlerRegistrationError",
    "HandlerRegistry",
    "HeaderRedeliveryInspector",
    "HealthCheckResult",
    "HealthRegistry",
    "HealthStatus",
    "IBackgroundWorker",
    "IMessageHandler",
    "IMessagePublisher",
    "IdempotencyFilter",
    "InMemoryBroker",
    "InMemoryConnectionManager",
    "JsonMessageSerializer",
    "MalformedPayloadError",
    "MessageConsumer",
    "MessageEnvelope",
    "MessagePublisher",
    "MessageQueueHealthCheck",
    "MessageTypeRegistry",
    "MessagingError",
    "MessagingMetrics",
    "MessagingSerializationError",
    "MessagingSettings",
    "PublishConfirmError",
    "QueueDefinition",
    "RabbitMQConnectionManager",
    "RetryPolicy",
    "RouteDefinition",
    "Topology",
    "TopologyError",
    "correlation_scope",
    "get_correlation_id",
]
