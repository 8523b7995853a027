"""InMemoryConnectionManager — connection manager backed by an InMemoryBroker."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..rabbitmq.connection import RabbitMQConnectionManager
from .broker import InMemoryBroker

if TYPE_CHECKING:
    from ..settings import MessagingSettings


class InMemoryConnectionManager(RabbitMQConnectionManager):
    """Same leasing, reference counting and reconnect policy as the RabbitMQ
    manager, with connections opened on an in-process broker.

    Pass the same broker to several managers to simulate several processes
    sharing one RabbitMQ node.
    """

    def __init__(
        self,
        broker: InMemoryBroker | None = None,
        settings: MessagingSettings | None = None,
    ) -> None:
        """If broker is None, a new private broker is created."""
        self._broker = broker or InMemoryBroker()
        super().__init__(settings, connect=self._broker.connect)

    @property
    def broker(self) -> InMemoryBroker:
        return self._broker
