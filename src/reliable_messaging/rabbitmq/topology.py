"""Declare a Topology on a broker channel."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aio_pika

from ..topology import ExchangeType

if TYPE_CHECKING:
    from ..topology import Topology

logger = logging.getLogger(__name__)


async def declare_topology(channel: Any, topology: Topology) -> dict[str, Any]:
    """Declare exchanges, the dead-letter pair, queues and bindings.

    Declarations are idempotent, so every consumer may call this on start.
    Returns the declared queues keyed by queue name.
    """
    exchanges: dict[str, Any] = {}
    for exchange in topology.exchanges.values():
        exchanges[exchange.name] = await channel.declare_exchange(
            exchange.name,
            aio_pika.ExchangeType(exchange.type.value),
            durable=exchange.durable,
            auto_delete=exchange.auto_delete,
        )

    queues: dict[str, Any] = {}
    dead_letter = topology.dead_letter
    if dead_letter.enabled:
        dlx = await channel.declare_exchange(
            dead_letter.exchange_name,
            aio_pika.ExchangeType(ExchangeType.TOPIC.value),
            durable=True,
        )
        arguments: dict[str, Any] = {}
        if dead_letter.message_ttl is not None:
            arguments["x-message-ttl"] = dead_letter.message_ttl
        dlq = await channel.declare_queue(
            dead_letter.queue_name, durable=True, arguments=arguments
        )
        await dlq.bind(dlx, routing_key=dead_letter.routing_key)
        await dlq.bind(dlx, routing_key="#")
        queues[dead_letter.queue_name] = dlq

    for queue in topology.queues.values():
        declared = await channel.declare_queue(
            queue.name,
            durable=queue.durable,
            exclusive=queue.exclusive,
            auto_delete=queue.auto_delete,
            arguments=topology.queue_arguments(queue),
        )
        exchange_name = topology.exchange_name(queue.exchange)
        await declared.bind(exchanges[exchange_name], routing_key=queue.routing_key)
        queues[queue.name] = declared

    logger.debug(
        "Declared %d exchange(s) and %d queue(s)", len(exchanges), len(queues)
    )
    return queues


async def declare_delay_queue(
    channel: Any,
    topology: Topology,
    exchange: str,
    routing_key: str,
    delay_ms: int,
) -> str:
    """Declare the TTL bucket queue that forwards to (exchange, routing_key).

    Messages published to the bucket through the default exchange expire
    after ``delay_ms`` and are dead-lettered to the real target, so they are
    never delivered before the delay has elapsed.
    """
    name = topology.delay_queue_name(exchange, routing_key, delay_ms)
    await channel.declare_queue(
        name,
        durable=True,
        arguments=topology.delay_queue_arguments(exchange, routing_key, delay_ms),
    )
    return name
