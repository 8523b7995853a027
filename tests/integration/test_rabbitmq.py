"""Publish/consume against a real RabbitMQ broker.

Uses testcontainers to spawn the broker.
Run with: nox -s integration  (or pytest -m integration)
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from typing import Any

import pytest

from reliable_messaging.handlers import HandlerRegistry
from reliable_messaging.health import HealthStatus, MessageQueueHealthCheck
from reliable_messaging.host import ConsumerHost
from reliable_messaging.metrics import MessagingMetrics
from reliable_messaging.rabbitmq import MessagePublisher, RabbitMQConnectionManager
from reliable_messaging.retry import RETRY_COUNT_HEADER
from reliable_messaging.settings import MessagingSettings
from reliable_messaging.topology import Topology

from ..conftest import SCAN_QUEUE, ScanServer

rabbitmq = pytest.importorskip("testcontainers.rabbitmq")

pytestmark = pytest.mark.integration


@pytest.fixture(scope="module")
def container() -> Iterator[Any]:
    try:
        with rabbitmq.RabbitMqContainer("rabbitmq:3.13-management") as started:
            yield started
    except Exception as e:  # noqa: BLE001
        pytest.skip(f"RabbitMQ container unavailable: {e!r}")


@pytest.fixture
def live_settings(container: Any) -> MessagingSettings:
    return MessagingSettings(
        _env_file=None,
        host=container.get_container_host_ip(),
        port=int(container.get_exposed_port(5672)),
        base_retry_delay=0.2,
        max_retry_delay=1.0,
        max_retry_attempts=2,
        shutdown_timeout=5.0,
    )


async def _drain_dead_letters(
    connection: RabbitMQConnectionManager, queue: str
) -> list[Any]:
    received = []
    async with connection.channel() as channel:
        dlq = await channel.declare_queue(queue, passive=True)
        while (message := await dlq.get(fail=False)) is not None:
            await message.ack()
            received.append(message)
    return received


@pytest.mark.asyncio
async def test_round_trip_retry_and_dead_letter(
    live_settings: MessagingSettings,
    topology: Topology,
    metrics: MessagingMetrics,
) -> None:
    attempts: list[str] = []
    handlers = HandlerRegistry()

    async def scan(command: ScanServer) -> None:
        attempts.append(command.server_id)
        if command.server_id == "bad":
            raise RuntimeError("scanner crashed")

    handlers.register("scan", ScanServer, scan)
    connection = RabbitMQConnectionManager(live_settings)

    async with connection:
        publisher = MessagePublisher(
            connection, topology, settings=live_settings, metrics=metrics
        )
        async with ConsumerHost(
            connection, topology, handlers, settings=live_settings, metrics=metrics
        ):
            await publisher.publish(ScanServer(server_id="good"))
            await publisher.publish(ScanServer(server_id="bad"))
            for _ in range(100):
                if attempts.count("bad") == 2 and "good" in attempts:
                    break
                await asyncio.sleep(0.1)
            await asyncio.sleep(0.5)

        assert attempts.count("good") == 1
        assert attempts.count("bad") == 2

        dead = await _drain_dead_letters(connection, topology.dead_letter.queue_name)
        assert len(dead) == 1
        assert dead[0].headers[RETRY_COUNT_HEADER] == 2
        assert dead[0].headers["x-original-queue"] == SCAN_QUEUE


@pytest.mark.asyncio
async def test_health_check_against_live_broker(
    live_settings: MessagingSettings,
) -> None:
    result = await MessageQueueHealthCheck(live_settings).check_health()
    assert result.status is HealthStatus.HEALTHY
