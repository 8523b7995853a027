"""Ports — protocols implemented by transports and collaborators."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from contextlib import AbstractAsyncContextManager
    from datetime import timedelta

    from .envelope import MessageEnvelope
    from .messages import BaseMessage


@runtime_checkable
class IMessageSerializer(Protocol):
    """Port for encoding typed messages to transport bytes."""

    content_type: str

    def serialize(self, message: BaseMessage) -> bytes: ...

    def decode_envelope(self, raw: bytes) -> MessageEnvelope: ...

    def deserialize(
        self, raw: bytes, message_type: type[BaseMessage] | None = None
    ) -> BaseMessage: ...


@runtime_checkable
class IMessagePublisher(Protocol):
    """
    Port for publishing messages, consumed by business logic.

    Infrastructure provides the concrete adapter (``MessagePublisher``).
    """

    async def publish(
        self,
        message: BaseMessage,
        exchange: str | None = None,
        routing_key: str | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        """
        Publish *message* and wait for the broker confirm.

        Args:
            message: Typed command or event.
            exchange: Logical key or broker name; topology default when omitted.
            routing_key: Routing key; topology default when omitted.
            timeout: Seconds to wait for the confirm; settings default when None.
        """
        ...

    async def publish_batch(
        self,
        messages: Iterable[BaseMessage],
        exchange: str | None = None,
        routing_key: str | None = None,
    ) -> None: ...

    async def publish_delayed(
        self,
        message: BaseMessage,
        delay: float | timedelta,
        exchange: str | None = None,
        routing_key: str | None = None,
        *,
        timeout: float | None = None,
    ) -> None: ...


@runtime_checkable
class IConnectionManager(Protocol):
    """Port for the owner of the broker connection.

    Channels returned by ``channel()`` and ``open_channel()`` follow the
    aio-pika channel API (declare_exchange, declare_queue, set_qos,
    default_exchange, get_exchange, close).
    """

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def acquire(self) -> None: ...

    async def release(self) -> None: ...

    def channel(self) -> AbstractAsyncContextManager[Any]: ...

    async def open_channel(self) -> Any: ...

    async def close(self) -> None: ...


@runtime_checkable
class IRedeliveryInspector(Protocol):
    """Reads how many delivery attempts a message already went through.

    The count lives in broker-side metadata so it survives process restarts;
    swapping brokers only requires another inspector.
    """

    def attempts(self, headers: Mapping[str, Any] | None) -> int: ...


@runtime_checkable
class ICacheService(Protocol):
    """Minimal async cache used for distributed idempotency."""

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...


@runtime_checkable
class IBackgroundWorker(Protocol):
    """Lifecycle protocol of long-running consumers.

    Used by: ``MessageConsumer``, ``ConsumerHost``.
    """

    async def start(self) -> None:
        """Start the background process."""
        ...

    async def stop(self) -> None:
        """Stop the background process gracefully."""
        ...
