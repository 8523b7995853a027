"""RabbitMQ connection ownership, reconnect policy, and channel leasing."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError
from aio_pika.pool import Pool

from ..exceptions import BrokerConnectionRefusedError
from ..retry import RetryPolicy
from ..settings import MessagingSettings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from types import TracebackType

    from aio_pika.abc import AbstractChannel, AbstractRobustConnection

logger = logging.getLogger(__name__)

CONNECT_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
    AMQPError,
)


class RabbitMQConnectionManager:
    """Owns the single robust broker connection of a process.

    The connection is opened lazily by the first user, re-established by
    aio-pika's robust connection after a loss, and closed when the last
    reference is released. Publishers lease short-lived channels from a pool;
    consumers open a dedicated channel each, so one slow operation never
    blocks unrelated ones.
    """

    def __init__(
        self,
        settings: MessagingSettings | None = None,
        *,
        connect: Callable[..., Awaitable[AbstractRobustConnection]] | None = None,
        **connect_kwargs: Any,
    ) -> None:
        """Configure the manager.

        Args:
            settings: Connection settings; defaults are read from the environment.
            connect: Connection factory (``aio_pika.connect_robust`` by default).
            **connect_kwargs: Extra keyword arguments for the factory.
        """
        self._settings = settings or MessagingSettings()
        self._connect = connect or aio_pika.connect_robust
        self._connect_kwargs = connect_kwargs
        self._connection: AbstractRobustConnection | None = None
        self._channel_pool: Pool[AbstractChannel] | None = None
        self._connecting: asyncio.Future[None] | None = None
        self._references = 0
        self._backoff_task: asyncio.Future[None] | None = None
        self._backoff = RetryPolicy(
            max_attempts=self._settings.connection_retry_attempts,
            base_delay=self._settings.reconnect_base_delay,
            max_delay=self._settings.reconnect_max_delay,
        )

    @property
    def settings(self) -> MessagingSettings:
        return self._settings

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    @property
    def references(self) -> int:
        return self._references

    async def connect(self) -> None:
        """Establish the connection. Idempotent if already connected.

        Concurrent callers share one connection attempt; when it fails every
        waiter receives the same BrokerConnectionRefusedError.
        """
        if self.is_connected:
            return
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._establish())
        await asyncio.shield(self._connecting)

    async def _establish(self) -> None:
        attempts = self._backoff.max_attempts
        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            try:
                connection = await asyncio.wait_for(
                    self._connect(
                        self._settings.url,
                        timeout=self._settings.connection_timeout,
                        client_properties={
                            "connection_name": self._settings.connection_name
                        },
                        reconnect_interval=self._settings.reconnect_base_delay,
                        **self._connect_kwargs,
                    ),
                    timeout=self._settings.connection_timeout,
                )
            except CONNECT_ERRORS as e:
                last_error = e
                logger.warning(
                    "Connection attempt %d/%d to %s failed: %r",
                    attempt,
                    attempts,
                    self._settings.safe_url,
                    e,
                )
                if self._backoff.should_retry(attempt):
                    await self._backoff.wait_before_retry(attempt)
                continue
            self._connection = connection
            self._watch_reconnects(connection)
            self._channel_pool = Pool(
                self._open_pooled_channel, max_size=self._settings.channel_pool_size
            )
            logger.info("Connected to %s", self._settings.safe_url)
            return
        raise BrokerConnectionRefusedError(
            f"Could not connect to {self._settings.safe_url} after "
            f"{attempts} attempt(s): {last_error!r}",
            attempts=attempts,
        ) from last_error

    def _watch_reconnects(self, connection: Any) -> None:
        """Back off aio-pika's reconnect loop exponentially after a loss.

        The robust connection retries every ``reconnect_interval`` seconds;
        while it is down the interval doubles up to ``reconnect_max_delay``
        and it is reset once the connection is re-established.
        """
        if not hasattr(connection, "reconnect_interval"):
            return
        connection.close_callbacks.add(self._on_connection_lost)
        connection.reconnect_callbacks.add(self._on_reconnected)

    def _on_connection_lost(self, sender: Any, *args: Any) -> None:
        if sender is not self._connection:
            return
        logger.warning(
            "Connection to %s lost; reconnecting with backoff",
            self._settings.safe_url,
        )
        self._cancel_backoff()
        self._backoff_task = asyncio.ensure_future(
            self._grow_reconnect_interval(sender)
        )

    def _on_reconnected(self, sender: Any, *args: Any) -> None:
        self._cancel_backoff()
        sender.reconnect_interval = self._settings.reconnect_base_delay
        logger.info("Reconnected to %s", self._settings.safe_url)

    async def _grow_reconnect_interval(self, connection: Any) -> None:
        ceiling = self._settings.reconnect_max_delay
        while connection.reconnect_interval < ceiling:
            await asyncio.sleep(connection.reconnect_interval)
            connection.reconnect_interval = min(
                max(connection.reconnect_interval * 2, 0.001), ceiling
            )

    def _cancel_backoff(self) -> None:
        if self._backoff_task is not None and not self._backoff_task.done():
            self._backoff_task.cancel()
        self._backoff_task = None

    async def _open_pooled_channel(self) -> AbstractChannel:
        if self._connection is None:
            raise BrokerConnectionRefusedError("Not connected; call connect() first")
        return await self._connection.channel(
            publisher_confirms=self._settings.publisher_confirms
        )

    @contextlib.asynccontextmanager
    async def channel(self) -> AsyncIterator[AbstractChannel]:
        """Lease a pooled channel for the duration of one operation."""
        await self.connect()
        if self._channel_pool is None:
            raise BrokerConnectionRefusedError("Connection closed while leasing")
        async with self._channel_pool.acquire() as channel:
            yield channel

    async def open_channel(self) -> AbstractChannel:
        """Open a dedicated channel; the caller closes it."""
        await self.connect()
        return await self._open_pooled_channel()

    async def acquire(self) -> None:
        """Take a reference on the connection, connecting if needed."""
        self._references += 1
        try:
            await self.connect()
        except BaseException:
            self._references -= 1
            raise

    async def release(self) -> None:
        """Drop a reference; the last one closes the connection."""
        if self._references == 0:
            return
        self._references -= 1
        if self._references == 0:
            await self.close()

    async def close(self) -> None:
        """Close the channel pool and the connection."""
        if self._channel_pool is not None:
            await self._channel_pool.close()
            self._channel_pool = None
        self._cancel_backoff()
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
            logger.info("Closed connection to %s", self._settings.safe_url)

    async def health_check(self) -> bool:
        """Return True if the managed connection is open."""
        return self.is_connected

    async def __aenter__(self) -> RabbitMQConnectionManager:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.release()
