"""InMemoryBroker — an AMQP 0-9-1 look-alike for tests and local runs.

Implements the part of the aio-pika connection/channel API that the
publisher, consumer and health check use: exchanges (topic, direct, fanout,
headers and the default exchange), queues with bindings, prefetch-limited
consumers, ack/nack/reject, per-queue message TTL and dead-letter exchanges
with ``x-death`` headers. Messages published through it are real
``aio_pika.Message`` objects, so the wire properties seen by handlers are the
ones a RabbitMQ broker would deliver.

Not modelled: ``x-expires``, per-message expiration, priorities, exclusive
queue ownership and redeclaration argument checks.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from aio_pika.exceptions import AMQPError, MessageProcessError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import aio_pika

logger = logging.getLogger(__name__)

_PROPERTIES = (
    "content_type",
    "content_encoding",
    "delivery_mode",
    "priority",
    "correlation_id",
    "reply_to",
    "message_id",
    "timestamp",
    "type",
    "user_id",
    "app_id",
)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: ``*`` is exactly one word, ``#`` zero or more."""
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    return (head in ("*", words[0])) and _match_words(rest, words[1:])


def _headers_match(arguments: dict[str, Any], headers: dict[str, Any]) -> bool:
    mode = arguments.get("x-match", "all")
    expected = {k: v for k, v in arguments.items() if not k.startswith("x-")}
    if not expected:
        return True
    hits = [headers.get(k) == v for k, v in expected.items()]
    return any(hits) if mode == "any" else all(hits)


@dataclass
class StoredMessage:
    """A message as held by a queue."""

    body: bytes
    headers: dict[str, Any]
    properties: dict[str, Any]
    exchange: str
    routing_key: str
    redelivered: bool = False
    expiry: asyncio.TimerHandle | None = field(default=None, repr=False)

    @classmethod
    def from_message(
        cls, message: aio_pika.Message, exchange: str, routing_key: str
    ) -> StoredMessage:
        return cls(
            body=bytes(message.body),
            headers=dict(message.headers or {}),
            properties={name: getattr(message, name, None) for name in _PROPERTIES},
            exchange=exchange,
            routing_key=routing_key,
        )


class InMemoryIncomingMessage:
    """Delivery handed to a consumer callback."""

    def __init__(
        self,
        stored: StoredMessage,
        queue: InMemoryQueue,
        channel: InMemoryChannel,
        delivery_tag: int,
        consumer_tag: str,
    ) -> None:
        self._stored = stored
        self._queue = queue
        self._channel = channel
        self.body = stored.body
        self.headers = dict(stored.headers)
        self.exchange = stored.exchange
        self.routing_key = stored.routing_key
        self.redelivered = stored.redelivered
        self.delivery_tag = delivery_tag
        self.consumer_tag = consumer_tag
        self.processed = False
        for name, value in stored.properties.items():
            setattr(self, name, value)

    def __repr__(self) -> str:
        return (
            f"InMemoryIncomingMessage(queue={self._queue.name!r}, "
            f"message_id={getattr(self, 'message_id', None)!r}, "
            f"delivery_tag={self.delivery_tag})"
        )

    def _settle(self) -> None:
        if self.processed:
            raise MessageProcessError("Message already processed", self)
        if self._channel.is_closed:
            raise AMQPError(
                f"Channel closed, cannot settle delivery {self.delivery_tag}"
            )
        self.processed = True
        self._channel._unacked.pop(self.delivery_tag, None)

    async def ack(self, multiple: bool = False) -> None:  # noqa: ARG002
        self._settle()
        self._queue.broker.acked.append(self._stored)
        self._queue.dispatch()

    async def nack(
        self, multiple: bool = False, requeue: bool = True  # noqa: ARG002
    ) -> None:
        self._settle()
        if requeue:
            self._queue.requeue(self._stored)
        else:
            self._queue.dead_letter(self._stored, "rejected")
        self._queue.dispatch()

    async def reject(self, requeue: bool = False) -> None:
        await self.nack(requeue=requeue)


class InMemoryExchange:
    def __init__(self, broker: InMemoryBroker, name: str, type: str) -> None:
        self.broker = broker
        self.name = name
        self.type = type
        self.bindings: list[tuple[InMemoryQueue, str, dict[str, Any]]] = []

    def __repr__(self) -> str:
        return f"InMemoryExchange(name={self.name!r}, type={self.type!r})"

    def matching_queues(
        self, routing_key: str, headers: dict[str, Any]
    ) -> list[InMemoryQueue]:
        if self.name == "":
            queue = self.broker.queues.get(routing_key)
            return [queue] if queue is not None else []
        matched: dict[str, InMemoryQueue] = {}
        for queue, binding_key, arguments in self.bindings:
            if self.type == "fanout":
                hit = True
            elif self.type == "direct":
                hit = binding_key == routing_key
            elif self.type == "headers":
                hit = _headers_match(arguments, headers)
            else:
                hit = topic_matches(binding_key, routing_key)
            if hit:
                matched.setdefault(queue.name, queue)
        return list(matched.values())


class _ChannelExchange:
    """Exchange handle bound to a channel, as returned by aio-pika."""

    def __init__(self, channel: InMemoryChannel, exchange: InMemoryExchange) -> None:
        self._channel = channel
        self._exchange = exchange
        self.name = exchange.name

    async def publish(
        self,
        message: aio_pika.Message,
        routing_key: str,
        *,
        mandatory: bool = True,  # noqa: ARG002
        immediate: bool = False,  # noqa: ARG002
        timeout: float | None = None,  # noqa: ARG002
    ) -> None:
        self._channel._check_open()
        stored = StoredMessage.from_message(message, self._exchange.name, routing_key)
        self._channel.broker.route(self._exchange.name, routing_key, stored)


@dataclass
class _Consumer:
    tag: str
    callback: Callable[[InMemoryIncomingMessage], Awaitable[Any]]
    channel: InMemoryChannel


class InMemoryQueue:
    def __init__(
        self, broker: InMemoryBroker, name: str, arguments: dict[str, Any]
    ) -> None:
        self.broker = broker
        self.name = name
        self.arguments = dict(arguments)
        self.ready: deque[StoredMessage] = deque()
        self.consumers: list[_Consumer] = []
        self._next_consumer = 0

    def __repr__(self) -> str:
        return f"InMemoryQueue(name={self.name!r}, ready={len(self.ready)})"

    def put(self, stored: StoredMessage) -> None:
        self.ready.append(stored)
        ttl = self.arguments.get("x-message-ttl")
        if ttl is not None:
            loop = asyncio.get_running_loop()
            stored.expiry = loop.call_later(ttl / 1000, self._expire, stored)
        self.dispatch()

    def requeue(self, stored: StoredMessage) -> None:
        self.ready.appendleft(replace(stored, redelivered=True, expiry=None))

    def _expire(self, stored: StoredMessage) -> None:
        try:
            self.ready.remove(stored)
        except ValueError:
            return
        self.dead_letter(stored, "expired")

    def dead_letter(self, stored: StoredMessage, reason: str) -> None:
        if stored.expiry is not None:
            stored.expiry.cancel()
        exchange = self.arguments.get("x-dead-letter-exchange")
        if exchange is None:
            self.broker.discarded.append(stored)
            return
        routing_key = self.arguments.get(
            "x-dead-letter-routing-key", stored.routing_key
        )
        headers = dict(stored.headers)
        deaths = [dict(d) for d in headers.get("x-death") or []]
        for death in deaths:
            if death.get("queue") == self.name and death.get("reason") == reason:
                death["count"] = death.get("count", 0) + 1
                death["time"] = datetime.now(timezone.utc)
                deaths.remove(death)
                deaths.insert(0, death)
                break
        else:
            deaths.insert(
                0,
                {
                    "count": 1,
                    "reason": reason,
                    "queue": self.name,
                    "time": datetime.now(timezone.utc),
                    "exchange": stored.exchange,
                    "routing-keys": [stored.routing_key],
                },
            )
        headers["x-death"] = deaths
        headers.setdefault("x-first-death-exchange", stored.exchange)
        headers.setdefault("x-first-death-queue", self.name)
        headers.setdefault("x-first-death-reason", reason)
        headers["x-last-death-exchange"] = stored.exchange
        headers["x-last-death-queue"] = self.name
        headers["x-last-death-reason"] = reason
        self.broker.route(
            exchange,
            routing_key,
            replace(
                stored,
                headers=headers,
                exchange=exchange,
                routing_key=routing_key,
                redelivered=False,
                expiry=None,
            ),
        )

    def dispatch(self) -> None:
        """Hand ready messages to consumers with free prefetch capacity."""
        while self.ready and self.consumers:
            consumer = self._pick_consumer()
            if consumer is None:
                return
            stored = self.ready.popleft()
            if stored.expiry is not None:
                stored.expiry.cancel()
                stored.expiry = None
            consumer.channel.deliver(self, consumer, stored)

    def _pick_consumer(self) -> _Consumer | None:
        count = len(self.consumers)
        for offset in range(count):
            index = (self._next_consumer + offset) % count
            consumer = self.consumers[index]
            if consumer.channel.has_capacity():
                self._next_consumer = (index + 1) % count
                return consumer
        return None

    async def bind(
        self,
        exchange: Any,
        routing_key: str | None = None,
        *,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,  # noqa: ARG002
    ) -> None:
        name = exchange if isinstance(exchange, str) else exchange.name
        target = self.broker.exchanges.get(name)
        if target is None:
            raise AMQPError(f"NOT_FOUND - no exchange {name!r}")
        binding = (self, routing_key or self.name, dict(arguments or {}))
        if binding not in target.bindings:
            target.bindings.append(binding)

    def message_count(self) -> int:
        return len(self.ready)


class _ChannelQueue:
    """Queue handle bound to the channel that declared it."""

    def __init__(self, channel: InMemoryChannel, queue: InMemoryQueue) -> None:
        self._channel = channel
        self._queue = queue
        self.name = queue.name
        self.arguments = queue.arguments

    async def bind(
        self, exchange: Any, routing_key: str | None = None, **kwargs: Any
    ) -> None:
        self._channel._check_open()
        await self._queue.bind(exchange, routing_key, **kwargs)

    async def consume(
        self,
        callback: Callable[[InMemoryIncomingMessage], Awaitable[Any]],
        no_ack: bool = False,  # noqa: ARG002
        consumer_tag: str | None = None,
        **kwargs: Any,  # noqa: ARG002
    ) -> str:
        self._channel._check_open()
        tag = consumer_tag or f"ctag-{next(self._channel.broker._tags)}"
        self._queue.consumers.append(_Consumer(tag, callback, self._channel))
        self._queue.dispatch()
        return tag

    async def cancel(
        self, consumer_tag: str, timeout: float | None = None  # noqa: ARG002
    ) -> None:
        self._queue.consumers = [
            c for c in self._queue.consumers if c.tag != consumer_tag
        ]

    async def declaration_result(self) -> int:
        return self._queue.message_count()


class InMemoryChannel:
    def __init__(
        self, connection: InMemoryConnection, publisher_confirms: bool = True
    ) -> None:
        self.connection = connection
        self.broker = connection.broker
        self.publisher_confirms = publisher_confirms
        self.prefetch_count = 0
        self._closed = False
        self._delivery_tags = itertools.count(1)
        self._unacked: dict[int, tuple[InMemoryQueue, StoredMessage]] = {}

    @property
    def is_closed(self) -> bool:
        return self._closed or self.connection.is_closed

    def _check_open(self) -> None:
        if self.is_closed:
            raise AMQPError("Channel is closed")
        if not self.broker.available:
            raise ConnectionError("Broker connection lost")

    def has_capacity(self) -> bool:
        return not self.is_closed and (
            self.prefetch_count == 0 or len(self._unacked) < self.prefetch_count
        )

    def deliver(
        self, queue: InMemoryQueue, consumer: _Consumer, stored: StoredMessage
    ) -> None:
        tag = next(self._delivery_tags)
        self._unacked[tag] = (queue, stored)
        incoming = InMemoryIncomingMessage(stored, queue, self, tag, consumer.tag)
        self.broker.deliveries.append((queue.name, incoming))
        self.broker._spawn(consumer.callback(incoming))

    @property
    def default_exchange(self) -> _ChannelExchange:
        return _ChannelExchange(self, self.broker.exchanges[""])

    async def set_qos(
        self, prefetch_count: int = 0, **kwargs: Any  # noqa: ARG002
    ) -> None:
        self.prefetch_count = prefetch_count

    async def declare_exchange(
        self,
        name: str,
        type: Any = "direct",
        *,
        durable: bool = False,  # noqa: ARG002
        auto_delete: bool = False,  # noqa: ARG002
        **kwargs: Any,  # noqa: ARG002
    ) -> _ChannelExchange:
        self._check_open()
        type_name = getattr(type, "value", type)
        exchange = self.broker.exchanges.get(name)
        if exchange is None:
            exchange = InMemoryExchange(self.broker, name, type_name)
            self.broker.exchanges[name] = exchange
        return _ChannelExchange(self, exchange)

    async def get_exchange(self, name: str, *, ensure: bool = True) -> _ChannelExchange:
        self._check_open()
        exchange = self.broker.exchanges.get(name)
        if exchange is None:
            if ensure:
                raise AMQPError(f"NOT_FOUND - no exchange {name!r}")
            exchange = InMemoryExchange(self.broker, name, "direct")
            return _ChannelExchange(self, exchange)
        return _ChannelExchange(self, exchange)

    async def declare_queue(
        self,
        name: str | None = None,
        *,
        durable: bool = False,  # noqa: ARG002
        exclusive: bool = False,  # noqa: ARG002
        auto_delete: bool = False,  # noqa: ARG002
        arguments: dict[str, Any] | None = None,
        **kwargs: Any,  # noqa: ARG002
    ) -> _ChannelQueue:
        self._check_open()
        name = name or f"amq.gen-{next(self.broker._tags)}"
        queue = self.broker.queues.get(name)
        if queue is None:
            queue = InMemoryQueue(self.broker, name, arguments or {})
            self.broker.queues[name] = queue
        return _ChannelQueue(self, queue)

    async def close(self, exc: BaseException | None = None) -> None:  # noqa: ARG002
        if self._closed:
            return
        self._closed = True
        for queue in self.broker.queues.values():
            queue.consumers = [c for c in queue.consumers if c.channel is not self]
        unacked, self._unacked = self._unacked, {}
        touched = set()
        for queue, stored in reversed(list(unacked.values())):
            queue.requeue(stored)
            touched.add(queue.name)
        for name in touched:
            self.broker.queues[name].dispatch()


class InMemoryConnection:
    def __init__(self, broker: InMemoryBroker) -> None:
        self.broker = broker
        self._closed = False
        self._channels: list[InMemoryChannel] = []

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def channel(
        self, publisher_confirms: bool = True, **kwargs: Any  # noqa: ARG002
    ) -> InMemoryChannel:
        if self._closed:
            raise AMQPError("Connection is closed")
        if not self.broker.available:
            raise ConnectionError("Broker connection lost")
        channel = InMemoryChannel(self, publisher_confirms=publisher_confirms)
        self._channels.append(channel)
        return channel

    async def close(self, exc: BaseException | None = None) -> None:  # noqa: ARG002
        if self._closed:
            return
        for channel in self._channels:
            await channel.close()
        self._closed = True
        self.broker.connections.discard(self)


class InMemoryBroker:
    """Process-local broker state shared by every in-memory connection.

    Usage::

        broker = InMemoryBroker()
        connection = InMemoryConnectionManager(broker)
        ...
        assert broker.message_count("dead-letters") == 1
    """

    def __init__(self, history_limit: int | None = 10_000) -> None:
        """Create an empty broker.

        Args:
            history_limit: How many entries each inspection log keeps; the
                oldest are dropped first. ``None`` keeps everything.
        """
        if history_limit is not None and history_limit < 0:
            raise ValueError("history_limit must be >= 0 or None")
        self.exchanges: dict[str, InMemoryExchange] = {
            "": InMemoryExchange(self, "", "direct")
        }
        self.queues: dict[str, InMemoryQueue] = {}
        self.connections: set[InMemoryConnection] = set()
        self.available = True
        # Inspection logs for tests.
        self.published: deque[tuple[str, str, StoredMessage]] = deque(
            maxlen=history_limit
        )
        self.deliveries: deque[tuple[str, InMemoryIncomingMessage]] = deque(
            maxlen=history_limit
        )
        self.acked: deque[StoredMessage] = deque(maxlen=history_limit)
        self.discarded: deque[StoredMessage] = deque(maxlen=history_limit)
        self.unroutable: deque[StoredMessage] = deque(maxlen=history_limit)
        self._tags = itertools.count(1)
        self._tasks: set[asyncio.Task[Any]] = set()

    async def connect(
        self, url: str | None = None, **kwargs: Any  # noqa: ARG002
    ) -> InMemoryConnection:
        """Drop-in for ``aio_pika.connect`` / ``aio_pika.connect_robust``."""
        if not self.available:
            raise ConnectionError("Connection refused by in-memory broker")
        connection = InMemoryConnection(self)
        self.connections.add(connection)
        return connection

    def route(self, exchange: str, routing_key: str, stored: StoredMessage) -> None:
        target = self.exchanges.get(exchange)
        if target is None:
            raise AMQPError(f"NOT_FOUND - no exchange {exchange!r}")
        self.published.append((exchange, routing_key, stored))
        queues = target.matching_queues(routing_key, stored.headers)
        if not queues:
            self.unroutable.append(stored)
            logger.debug("Unroutable message on %r with key %r", exchange, routing_key)
            return
        for queue in queues:
            queue.put(replace(stored, headers=dict(stored.headers), expiry=None))

    def message_count(self, queue: str) -> int:
        """Ready (undelivered) messages in *queue*."""
        found = self.queues.get(queue)
        return found.message_count() if found is not None else 0

    def messages(self, queue: str) -> list[StoredMessage]:
        """Snapshot of the ready messages in *queue*."""
        found = self.queues.get(queue)
        return list(found.ready) if found is not None else []

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Consumer callback raised", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait until no consumer callback is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
