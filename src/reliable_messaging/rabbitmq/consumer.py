"""MessageConsumer — typed dispatch with retry and dead-letter routing."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from aio_pika.exceptions import AMQPError
from pydantic import ValidationError

from ..correlation import correlation_scope
from ..dead_letter import (
    ORIGINAL_EXCHANGE_HEADER,
    ORIGINAL_ROUTING_KEY_HEADER,
    DeadLetter,
    DeadLetterReason,
    dead_letter_headers,
)
from ..exceptions import (
    HandlerError,
    MalformedPayloadError,
    MessagingError,
    MessagingSerializationError,
)
from ..metrics import get_default_metrics
from ..retry import (
    LAST_ERROR_HEADER,
    RETRY_COUNT_HEADER,
    HeaderRedeliveryInspector,
    RetryPolicy,
    republishable_headers,
    truncate_error,
)
from ..serialization import JsonMessageSerializer
from ..settings import MessagingSettings
from ..topology import DEFAULT_EXCHANGE, Topology
from .publisher import MessagePublisher
from .topology import declare_topology

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from aio_pika.abc import AbstractIncomingMessage

    from ..dead_letter import DeadLetterHandler
    from ..envelope import MessageEnvelope
    from ..handlers import HandlerRegistry
    from ..idempotency import IdempotencyFilter
    from ..metrics import MessagingMetrics
    from ..ports import IConnectionManager, IMessageSerializer, IRedeliveryInspector

logger = logging.getLogger(__name__)

_CLOSE_ERRORS = (AMQPError, ConnectionError, OSError, RuntimeError)


class _SettleFailed(Exception):
    """ack/nack/reject could not reach the broker."""


class ConsumerState(str, enum.Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    STOPPING = "stopping"
    STOPPED = "stopped"


class DeliveryOutcome(str, enum.Enum):
    ACKED = "acked"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
    REQUEUED = "requeued"


class MessageConsumer:
    """Consumes one queue and dispatches deliveries to registered handlers.

    Each delivery runs in its own task, so up to ``prefetch_count`` handlers
    run concurrently and a slow handler never blocks the dispatch callback.
    A failed delivery is republished with an incremented ``x-retry-count``
    header through a delay queue and the original is acked; once the policy
    is exhausted the delivery is dead-lettered with annotations.

    Usage::

        consumer = MessageConsumer(connection, topology, "security-scan", registry)
        await consumer.start()
        ...
        await consumer.stop()
    """

    def __init__(
        self,
        connection: IConnectionManager,
        topology: Topology | None,
        queue: str,
        handlers: HandlerRegistry,
        *,
        settings: MessagingSettings | None = None,
        serializer: IMessageSerializer | None = None,
        publisher: MessagePublisher | None = None,
        retry_policy: RetryPolicy | None = None,
        inspector: IRedeliveryInspector | None = None,
        dead_letter_handler: DeadLetterHandler | None = None,
        idempotency: IdempotencyFilter | None = None,
        prefetch_count: int | None = None,
        shutdown_timeout: float | None = None,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        """Configure consumer.

        Args:
            connection: Shared connection manager.
            topology: Routing description; built from settings when omitted.
            queue: Logical key or broker name of the queue to consume.
            handlers: Registry whose handlers for ``queue`` are dispatched to.
            settings: Defaults for prefetch, retry and shutdown.
            serializer: Decoder; defaults to JSON over the registry's types.
            publisher: Used to republish retries and dead letters.
            retry_policy: Attempts and backoff; defaults from settings.
            inspector: Reads prior attempts from headers.
            dead_letter_handler: Notified after a delivery is dead-lettered.
            idempotency: Skips deliveries this queue already processed.
            prefetch_count: Unacked deliveries in flight.
            shutdown_timeout: Seconds stop() waits for in-flight handlers.
            metrics: Counter sink; defaults to the process-wide metrics.
        """
        self._connection = connection
        self._settings = (
            settings or getattr(connection, "settings", None) or MessagingSettings()
        )
        self._topology = topology or Topology.from_settings(self._settings)
        self._queue_key = queue
        self._queue_name = self._topology.queue(queue).name
        self._handlers = handlers
        self._serializer = serializer or JsonMessageSerializer(registry=handlers.types)
        self._metrics = metrics or get_default_metrics()
        self._publisher = publisher or MessagePublisher(
            connection,
            self._topology,
            serializer=self._serializer,
            settings=self._settings,
            metrics=self._metrics,
        )
        self._retry_policy = retry_policy or RetryPolicy.from_settings(self._settings)
        self._inspector = inspector or HeaderRedeliveryInspector()
        self._dead_letter_handler = dead_letter_handler
        self._idempotency = idempotency
        self._prefetch_count = (
            self._settings.prefetch_count if prefetch_count is None else prefetch_count
        )
        self._shutdown_timeout = (
            self._settings.shutdown_timeout
            if shutdown_timeout is None
            else shutdown_timeout
        )
        self._state = ConsumerState.IDLE
        self._channel: Any = None
        self._queue: Any = None
        self._consumer_tag: str | None = None
        self._in_flight: set[asyncio.Task[DeliveryOutcome | None]] = set()

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        """Subscribe to the queue. No-op when already subscribed."""
        if self._state in (ConsumerState.SUBSCRIBED, ConsumerState.STOPPING):
            return
        if not self._handlers.message_types(self._queue_key):
            logger.warning(
                "No handlers registered for queue %r; every delivery will be "
                "dead-lettered",
                self._queue_key,
            )
        await self._connection.acquire()
        try:
            self._channel = await self._connection.open_channel()
            await self._channel.set_qos(prefetch_count=self._prefetch_count)
            queues = await declare_topology(self._channel, self._topology)
            self._queue = queues[self._queue_name]
            self._consumer_tag = await self._queue.consume(self._on_message)
        except BaseException:
            await self._close_channel()
            await self._connection.release()
            raise
        self._state = ConsumerState.SUBSCRIBED
        logger.info(
            "Consuming %r (prefetch=%d, max_attempts=%d)",
            self._queue_name,
            self._prefetch_count,
            self._retry_policy.max_attempts,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop consuming and wait for in-flight handlers.

        Handlers still running after the timeout are cancelled; their
        deliveries are unacked and return to the queue when the channel
        closes.
        """
        if self._state is not ConsumerState.SUBSCRIBED:
            if self._state is ConsumerState.IDLE:
                self._state = ConsumerState.STOPPED
            return
        self._state = ConsumerState.STOPPING
        timeout = self._shutdown_timeout if timeout is None else timeout
        try:
            if self._queue is not None and self._consumer_tag is not None:
                await self._queue.cancel(self._consumer_tag)
        except _CLOSE_ERRORS as e:
            logger.warning("Cancelling consumer on %r failed: %r", self._queue_name, e)

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
            if pending:
                logger.warning(
                    "Cancelling %d in-flight delivery(ies) on %r after %.1fs",
                    len(pending),
                    self._queue_name,
                    timeout,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await self._close_channel()
        self._queue = None
        self._consumer_tag = None
        await self._connection.release()
        self._state = ConsumerState.STOPPED
        logger.info("Stopped consuming %r", self._queue_name)

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await channel.close()
        except _CLOSE_ERRORS as e:
            logger.warning("Closing channel of %r failed: %r", self._queue_name, e)

    async def _on_message(self, raw: AbstractIncomingMessage) -> None:
        if self._state is not ConsumerState.SUBSCRIBED:
            await raw.nack(requeue=True)
            return
        task = asyncio.create_task(self._process(raw))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _process(self, raw: AbstractIncomingMessage) -> DeliveryOutcome | None:
        started = time.monotonic()
        attempt = self._inspector.attempts(raw.headers) + 1
        context: dict[str, Any] = {
            "message_type": raw.type or "unknown",
            "correlation_id": raw.correlation_id,
        }
        try:
            outcome = await self._dispatch(raw, attempt, context)
        except _SettleFailed as e:
            # Channel gone while settling; the broker redelivers the message.
            logger.warning(
                "Could not settle delivery %s on %r: %r",
                raw.message_id,
                self._queue_name,
                e.__cause__,
            )
            return None
        self._metrics.record_consumed(
            self._queue_name, context["message_type"], outcome.value
        )
        logger.info(
            json.dumps(
                {
                    "queue": self._queue_name,
                    "message_type": context["message_type"],
                    "message_id": raw.message_id,
                    "outcome": outcome.value,
                    "attempt": attempt,
                    "correlation_id": context["correlation_id"],
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                }
            )
        )
        return outcome

    async def _dispatch(
        self,
        raw: AbstractIncomingMessage,
        attempt: int,
        context: dict[str, Any],
    ) -> DeliveryOutcome:
        try:
            envelope = self._decode(raw)
        except MessagingSerializationError as e:
            logger.warning(
                "Malformed delivery %s on %r: %s", raw.message_id, self._queue_name, e
            )
            return await self._dead_letter(
                raw, DeadLetterReason.MALFORMED_PAYLOAD, str(e), attempt, error=e
            )

        message_type = envelope.message_type
        context["message_type"] = message_type
        context["correlation_id"] = envelope.correlation_id
        handler = self._handlers.resolve(self._queue_key, message_type)
        message_class = self._handlers.types.get(message_type)
        if handler is None or message_class is None:
            logger.error(
                "No handler registered for %s on %r", message_type, self._queue_name
            )
            return await self._dead_letter(
                raw,
                DeadLetterReason.NO_HANDLER,
                f"No handler registered for {message_type}",
                attempt,
                message_type=message_type,
            )

        try:
            message = envelope.unwrap(message_class)
        except ValidationError as e:
            error = MalformedPayloadError(f"Invalid {message_type} payload: {e}")
            logger.warning("Malformed %s on %r: %s", message_type, self._queue_name, e)
            return await self._dead_letter(
                raw,
                DeadLetterReason.MALFORMED_PAYLOAD,
                str(error),
                attempt,
                error=error,
                message_type=message_type,
            )

        if await self._already_processed(message.message_id):
            logger.info(
                "Skipping duplicate %s %s on %r",
                message_type,
                message.message_id,
                self._queue_name,
            )
            await self._settle(raw.ack())
            return DeliveryOutcome.ACKED

        try:
            with correlation_scope(message.correlation_id, message.message_id):
                await handler(message)
        except Exception as e:
            failure = HandlerError(message_type, e)
            logger.exception(
                "%s (attempt %d) on %r", failure, attempt, self._queue_name
            )
            return await self._handle_failure(raw, message_type, attempt, e)

        await self._mark_processed(message.message_id)
        await self._settle(raw.ack())
        return DeliveryOutcome.ACKED

    async def _already_processed(self, message_id: str) -> bool:
        if self._idempotency is None:
            return False
        try:
            return await self._idempotency.already_processed(
                self._queue_name, message_id
            )
        except Exception:
            # Delivery stays at-least-once when the record is unreachable.
            logger.exception(
                "Idempotency lookup failed for %s on %r; processing it anyway",
                message_id,
                self._queue_name,
            )
            return False

    async def _mark_processed(self, message_id: str) -> None:
        if self._idempotency is None:
            return
        try:
            await self._idempotency.mark_processed(self._queue_name, message_id)
        except Exception:
            logger.exception(
                "Could not record %s as processed on %r", message_id, self._queue_name
            )

    async def _settle(self, settlement: Awaitable[None]) -> None:
        try:
            await settlement
        except _CLOSE_ERRORS as e:
            raise _SettleFailed(e) from e

    def _decode(self, raw: AbstractIncomingMessage) -> MessageEnvelope:
        expected = self._serializer.content_type
        if raw.content_type and raw.content_type != expected:
            raise MalformedPayloadError(
                f"Unsupported content type {raw.content_type!r}; expected {expected!r}"
            )
        return self._serializer.decode_envelope(raw.body)

    async def _handle_failure(
        self,
        raw: AbstractIncomingMessage,
        message_type: str,
        attempt: int,
        error: Exception,
    ) -> DeliveryOutcome:
        if not self._retry_policy.should_retry(attempt):
            return await self._dead_letter(
                raw,
                DeadLetterReason.RETRIES_EXHAUSTED,
                f"Handler failed after {attempt} attempt(s)",
                attempt,
                error=error,
                message_type=message_type,
            )

        delay = self._retry_policy.delay_for_attempt(attempt)
        headers = republishable_headers(raw.headers)
        headers.setdefault(ORIGINAL_EXCHANGE_HEADER, raw.exchange or DEFAULT_EXCHANGE)
        headers.setdefault(ORIGINAL_ROUTING_KEY_HEADER, raw.routing_key or "")
        headers[RETRY_COUNT_HEADER] = attempt
        headers[LAST_ERROR_HEADER] = truncate_error(error)
        try:
            await self._publisher.forward(
                raw, DEFAULT_EXCHANGE, self._queue_name, headers=headers, delay=delay
            )
        except MessagingError as e:
            logger.error(
                "Could not schedule retry of %s on %r, requeueing: %s",
                raw.message_id,
                self._queue_name,
                e,
            )
            await self._settle(raw.nack(requeue=True))
            return DeliveryOutcome.REQUEUED
        await self._settle(raw.ack())
        logger.warning(
            "Retrying %s %s on %r in %.2fs (attempt %d/%d)",
            message_type,
            raw.message_id,
            self._queue_name,
            delay,
            attempt + 1,
            self._retry_policy.max_attempts,
        )
        return DeliveryOutcome.RETRYING

    async def _dead_letter(
        self,
        raw: AbstractIncomingMessage,
        reason: DeadLetterReason,
        description: str,
        attempts: int,
        *,
        error: BaseException | None = None,
        message_type: str | None = None,
    ) -> DeliveryOutcome:
        dead_letter = self._topology.dead_letter
        headers = dead_letter_headers(
            republishable_headers(raw.headers),
            queue=self._queue_name,
            exchange=raw.exchange or DEFAULT_EXCHANGE,
            routing_key=raw.routing_key or "",
            reason=reason,
            description=description,
            attempts=attempts,
            error=error,
        )
        if dead_letter.enabled:
            try:
                await self._publisher.forward(
                    raw,
                    dead_letter.exchange_name,
                    dead_letter.routing_key,
                    headers=headers,
                )
            except MessagingError as e:
                logger.error(
                    "Publishing %s to %r failed, rejecting instead: %s",
                    raw.message_id,
                    dead_letter.exchange_name,
                    e,
                )
                await self._settle(raw.reject(requeue=False))
            else:
                await self._settle(raw.ack())
        else:
            logger.error(
                "Dead-lettering is disabled; discarding %s from %r (%s)",
                raw.message_id,
                self._queue_name,
                reason.value,
            )
            await self._settle(raw.reject(requeue=False))

        self._metrics.record_dead_lettered(self._queue_name, reason.value)
        if self._dead_letter_handler is not None:
            await self._dead_letter_handler.notify(
                DeadLetter(
                    queue=self._queue_name,
                    reason=reason,
                    description=description,
                    attempts=attempts,
                    body=raw.body,
                    message_id=raw.message_id,
                    message_type=message_type or raw.type,
                    error=error,
                    headers=headers,
                )
            )
        return DeliveryOutcome.DEAD_LETTERED
