"""Prometheus counters for publish/consume outcomes.

Emits:
  - ``reliable_messaging_messages_published_total{message_type}``
  - ``reliable_messaging_messages_consumed_total{queue, message_type, outcome}``
  - ``reliable_messaging_messages_dead_lettered_total{queue, reason}``
"""

from __future__ import annotations

import logging

from prometheus_client import REGISTRY, CollectorRegistry, Counter

_logger = logging.getLogger(__name__)


class MessagingMetrics:
    """Holds the messaging counters for one prometheus registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.published = Counter(
            "reliable_messaging_messages_published",
            "Messages confirmed by the broker",
            ["message_type"],
            registry=registry,
        )
        self.consumed = Counter(
            "reliable_messaging_messages_consumed",
            "Deliveries processed, by outcome",
            ["queue", "message_type", "outcome"],
            registry=registry,
        )
        self.dead_lettered = Counter(
            "reliable_messaging_messages_dead_lettered",
            "Deliveries routed to the dead-letter queue",
            ["queue", "reason"],
            registry=registry,
        )

    def record_published(self, message_type: str) -> None:
        self.published.labels(message_type=message_type).inc()

    def record_consumed(self, queue: str, message_type: str, outcome: str) -> None:
        self.consumed.labels(
            queue=queue, message_type=message_type, outcome=outcome
        ).inc()

    def record_dead_lettered(self, queue: str, reason: str) -> None:
        self.dead_lettered.labels(queue=queue, reason=reason).inc()


_default: MessagingMetrics | None = None


def get_default_metrics() -> MessagingMetrics:
    """Return the process-wide metrics bound to the global prometheus registry."""
    global _default  # noqa: PLW0603
    if _default is None:
        _default = MessagingMetrics()
        _logger.debug("Registered messaging metrics on the default registry")
    return _default
