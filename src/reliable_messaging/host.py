"""ConsumerHost — runs the consumers for every queue of a HandlerRegistry."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .rabbitmq.consumer import MessageConsumer

if TYPE_CHECKING:
    from types import TracebackType

    from .handlers import HandlerRegistry
    from .ports import IConnectionManager
    from .topology import Topology

logger = logging.getLogger(__name__)


class ConsumerHost:
    """Starts ``instances_per_queue`` consumers for each registered queue.

    Several instances on one queue compete for deliveries, which gives
    parallelism across handlers while each instance keeps its own channel
    and prefetch window. Extra keyword arguments are passed to every
    MessageConsumer (retry_policy, dead_letter_handler, idempotency, ...).
    """

    def __init__(
        self,
        connection: IConnectionManager,
        topology: Topology | None,
        registry: HandlerRegistry,
        *,
        instances_per_queue: int = 1,
        **consumer_kwargs: Any,
    ) -> None:
        if instances_per_queue < 1:
            raise ValueError("instances_per_queue must be >= 1")
        self._connection = connection
        self._topology = topology
        self._registry = registry
        self._instances = instances_per_queue
        self._consumer_kwargs = consumer_kwargs
        self._consumers: list[MessageConsumer] = []

    @property
    def consumers(self) -> list[MessageConsumer]:
        return list(self._consumers)

    @property
    def running(self) -> bool:
        return bool(self._consumers)

    async def start(self) -> None:
        """Start every consumer; on failure the ones already started are stopped."""
        if self._consumers:
            return
        started: list[MessageConsumer] = []
        try:
            for queue in self._registry.queues():
                for _ in range(self._instances):
                    consumer = MessageConsumer(
                        self._connection,
                        self._topology,
                        queue,
                        self._registry,
                        **self._consumer_kwargs,
                    )
                    await consumer.start()
                    started.append(consumer)
        except BaseException:
            await asyncio.gather(
                *(c.stop() for c in started), return_exceptions=True
            )
            raise
        self._consumers = started
        logger.info(
            "Started %d consumer(s) on %d queue(s)",
            len(started),
            len(self._registry.queues()),
        )

    async def stop(self) -> None:
        """Stop all consumers concurrently, each draining its in-flight work."""
        consumers, self._consumers = self._consumers, []
        if not consumers:
            return
        results = await asyncio.gather(
            *(c.stop() for c in consumers), return_exceptions=True
        )
        for consumer, result in zip(consumers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Stopping consumer on %r failed: %r", consumer.queue_name, result
                )
        logger.info("Stopped %d consumer(s)", len(consumers))

    async def __aenter__(self) -> ConsumerHost:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
