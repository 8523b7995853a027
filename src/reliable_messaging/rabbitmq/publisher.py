"""MessagePublisher — confirmed, batch and delayed publishing."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError, DeliveryError

from ..exceptions import (
    BatchItemFailure,
    BatchPublishError,
    BrokerUnavailableError,
    MessagingError,
    MessagingSerializationError,
    PublishConfirmError,
)
from ..messages import message_type_name
from ..metrics import get_default_metrics
from ..serialization import JsonMessageSerializer
from ..settings import MessagingSettings
from ..topology import DEFAULT_EXCHANGE, Topology
from .topology import declare_delay_queue, declare_topology

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from aio_pika.abc import AbstractIncomingMessage

    from ..messages import BaseMessage
    from ..metrics import MessagingMetrics
    from ..ports import IConnectionManager, IMessageSerializer

logger = logging.getLogger(__name__)

MESSAGE_TYPE_HEADER = "message-type"
INITIATED_BY_HEADER = "initiated-by"
CAUSATION_ID_HEADER = "causation-id"
DELAY_HEADER = "x-delay-ms"


def _delay_to_ms(delay: float | timedelta) -> int:
    """Whole milliseconds, rounded up so the delay is never shortened."""
    seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
    if seconds < 0:
        raise ValueError("delay must be >= 0")
    return math.ceil(seconds * 1000)


class MessagePublisher:
    """Publishes typed messages with publisher-confirm semantics.

    Each send leases its own channel from the connection manager, so
    concurrent callers sharing one publisher never interleave frames.
    """

    def __init__(
        self,
        connection: IConnectionManager,
        topology: Topology | None = None,
        *,
        serializer: IMessageSerializer | None = None,
        settings: MessagingSettings | None = None,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        """Configure publisher.

        Args:
            connection: Shared connection manager.
            topology: Routing description; built from settings when omitted.
            serializer: Encodes messages; default JsonMessageSerializer().
            settings: Delivery settings; defaults to the connection's settings.
            metrics: Counter sink; defaults to the process-wide metrics.
        """
        self._connection = connection
        self._settings = (
            settings or getattr(connection, "settings", None) or MessagingSettings()
        )
        self._topology = topology or Topology.from_settings(self._settings)
        self._serializer = serializer or JsonMessageSerializer()
        self._metrics = metrics or get_default_metrics()
        self._topology_declared = False
        self._declare_lock = asyncio.Lock()

    @property
    def topology(self) -> Topology:
        return self._topology

    @property
    def serializer(self) -> IMessageSerializer:
        return self._serializer

    async def publish(
        self,
        message: BaseMessage,
        exchange: str | None = None,
        routing_key: str | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        """Publish *message* and return once the broker has confirmed it.

        Raises:
            MessagingSerializationError: the message cannot be encoded.
            BrokerUnavailableError: no connection or no confirm within the timeout.
            PublishConfirmError: the broker rejected the message.
        """
        exchange_name, key = self._resolve(message, exchange, routing_key)
        amqp_message = self.build_message(message, self._encode(message))
        await self._send(amqp_message, exchange_name, key, timeout=timeout)
        self._record(message, exchange_name, key)

    async def publish_batch(
        self,
        messages: Iterable[BaseMessage],
        exchange: str | None = None,
        routing_key: str | None = None,
    ) -> None:
        """Publish every message; failures are raised together at the end.

        This is not a transaction: messages confirmed before or after a
        failing one stay published.
        """
        failures: list[BatchItemFailure] = []
        published = 0
        for index, message in enumerate(messages):
            try:
                await self.publish(message, exchange, routing_key)
            except MessagingError as e:
                name = message_type_name(message)
                logger.warning("Batch item %d (%s) failed: %s", index, name, e)
                failures.append(BatchItemFailure(index, message, e))
            else:
                published += 1
        if failures:
            raise BatchPublishError(failures, published)

    async def publish_delayed(
        self,
        message: BaseMessage,
        delay: float | timedelta,
        exchange: str | None = None,
        routing_key: str | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        """Publish *message* so that it is delivered no sooner than *delay*.

        *delay* is in seconds (or a timedelta) and is rounded up to whole
        milliseconds.
        """
        delay_ms = _delay_to_ms(delay)
        if delay_ms == 0:
            await self.publish(message, exchange, routing_key, timeout=timeout)
            return
        exchange_name, key = self._resolve(message, exchange, routing_key)
        amqp_message = self.build_message(
            message, self._encode(message), extra_headers={DELAY_HEADER: delay_ms}
        )
        await self._send(
            amqp_message, exchange_name, key, delay_ms=delay_ms, timeout=timeout
        )
        self._record(message, exchange_name, key)

    async def forward(
        self,
        raw: AbstractIncomingMessage,
        exchange: str,
        routing_key: str,
        *,
        headers: Mapping[str, Any],
        delay: float | timedelta = 0,
    ) -> None:
        """Republish an already encoded delivery with new headers.

        Used by consumers to schedule retries and to dead-letter messages.
        """
        amqp_message = aio_pika.Message(
            raw.body,
            headers=dict(headers),
            content_type=raw.content_type,
            content_encoding=raw.content_encoding,
            delivery_mode=self._delivery_mode(),
            correlation_id=raw.correlation_id,
            message_id=raw.message_id,
            timestamp=raw.timestamp,
            type=raw.type,
            app_id=raw.app_id,
        )
        await self._send(
            amqp_message, exchange, routing_key, delay_ms=_delay_to_ms(delay)
        )

    def build_message(
        self,
        message: BaseMessage,
        body: bytes,
        *,
        extra_headers: Mapping[str, Any] | None = None,
    ) -> aio_pika.Message:
        """AMQP message carrying *body* and the envelope's tracing properties."""
        type_name = message_type_name(message)
        headers: dict[str, Any] = {MESSAGE_TYPE_HEADER: type_name}
        if message.initiated_by:
            headers[INITIATED_BY_HEADER] = message.initiated_by
        if message.causation_id:
            headers[CAUSATION_ID_HEADER] = message.causation_id
        if extra_headers:
            headers.update(extra_headers)
        return aio_pika.Message(
            body,
            headers=headers,
            content_type=self._serializer.content_type,
            content_encoding="utf-8",
            delivery_mode=self._delivery_mode(),
            correlation_id=message.correlation_id,
            message_id=message.message_id,
            timestamp=message.created_at,
            type=type_name,
            app_id=self._settings.connection_name,
        )

    async def ensure_topology(self) -> None:
        """Declare the topology once per publisher."""
        if self._topology_declared:
            return
        async with self._declare_lock:
            if self._topology_declared:
                return
            async with self._connection.channel() as channel:
                await declare_topology(channel, self._topology)
            self._topology_declared = True

    async def health_check(self) -> bool:
        """Return True if the connection is healthy."""
        return await self._connection.health_check()  # type: ignore[attr-defined]

    def _resolve(
        self,
        message: BaseMessage,
        exchange: str | None,
        routing_key: str | None,
    ) -> tuple[str, str]:
        if exchange is None or routing_key is None:
            default_exchange, default_key = self._topology.route_for(message)
            exchange = default_exchange if exchange is None else exchange
            routing_key = default_key if routing_key is None else routing_key
        return self._topology.exchange_name(exchange), routing_key

    def _encode(self, message: BaseMessage) -> bytes:
        try:
            return self._serializer.serialize(message)
        except MessagingSerializationError:
            raise
        except Exception as e:
            raise MessagingSerializationError(str(e)) from e

    def _delivery_mode(self) -> aio_pika.DeliveryMode:
        if self._settings.persistent_messages:
            return aio_pika.DeliveryMode.PERSISTENT
        return aio_pika.DeliveryMode.NOT_PERSISTENT

    def _record(self, message: BaseMessage, exchange: str, routing_key: str) -> None:
        type_name = message_type_name(message)
        self._metrics.record_published(type_name)
        logger.debug(
            "Published %s %s to %r with key %r",
            type_name,
            message.message_id,
            exchange,
            routing_key,
        )

    async def _send(
        self,
        amqp_message: aio_pika.Message,
        exchange: str,
        routing_key: str,
        *,
        delay_ms: int = 0,
        timeout: float | None = None,
    ) -> None:
        timeout = self._settings.request_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(
                self._send_on_channel(amqp_message, exchange, routing_key, delay_ms),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise BrokerUnavailableError(
                f"No broker confirm for {exchange!r}/{routing_key!r} within {timeout}s"
            ) from e
        except DeliveryError as e:
            raise PublishConfirmError(
                f"Broker rejected message for {exchange!r}/{routing_key!r}: {e}"
            ) from e
        except (AMQPError, ConnectionError, OSError) as e:
            raise BrokerUnavailableError(
                f"Publishing to {exchange!r}/{routing_key!r} failed: {e!r}"
            ) from e

    async def _send_on_channel(
        self,
        amqp_message: aio_pika.Message,
        exchange: str,
        routing_key: str,
        delay_ms: int,
    ) -> None:
        await self.ensure_topology()
        async with self._connection.channel() as channel:
            if delay_ms > 0:
                routing_key = await declare_delay_queue(
                    channel, self._topology, exchange, routing_key, delay_ms
                )
                exchange = DEFAULT_EXCHANGE
            if exchange == DEFAULT_EXCHANGE:
                target = channel.default_exchange
            else:
                target = await channel.get_exchange(exchange, ensure=False)
            await target.publish(amqp_message, routing_key=routing_key)
