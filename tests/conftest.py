"""Shared fixtures: example messages, settings, topology and the in-memory broker."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
from prometheus_client import CollectorRegistry

from reliable_messaging.handlers import HandlerRegistry
from reliable_messaging.memory import InMemoryBroker, InMemoryConnectionManager
from reliable_messaging.messages import BaseCommand, BaseEvent
from reliable_messaging.metrics import MessagingMetrics
from reliable_messaging.settings import MessagingSettings
from reliable_messaging.topology import QueueDefinition, Topology

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


class ServerRegistered(BaseEvent):
    server_id: str
    name: str
    repository_url: str | None = None


class ScanServer(BaseCommand):
    server_id: str
    scan_type: str = "full"


class IndexServer(BaseCommand):
    server_id: str


REGISTRY_QUEUE = "registry-events"
SCAN_QUEUE = "security-scan"
DEAD_LETTER_QUEUE = "dead-letters"


@pytest.fixture
def settings() -> MessagingSettings:
    return MessagingSettings(
        _env_file=None,
        base_retry_delay=0.05,
        max_retry_delay=1.0,
        connection_retry_attempts=2,
        reconnect_base_delay=0.0,
        reconnect_max_delay=0.0,
        request_timeout=2.0,
        health_check_timeout=0.5,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def topology() -> Topology:
    return Topology(
        queues={
            "registry": QueueDefinition(
                name=REGISTRY_QUEUE, exchange="events", routing_key="server.*"
            ),
            "scan": QueueDefinition(
                name=SCAN_QUEUE, exchange="commands", routing_key="scan.server"
            ),
        }
    )


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry: CollectorRegistry) -> MessagingMetrics:
    return MessagingMetrics(registry=metrics_registry)


@pytest.fixture
def handlers() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def connection(
    broker: InMemoryBroker, settings: MessagingSettings
) -> InMemoryConnectionManager:
    return InMemoryConnectionManager(broker, settings)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds, failing after *timeout* seconds."""

    async def wait(
        predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return wait
