"""Tests for MessageQueueHealthCheck and HealthRegistry."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from reliable_messaging.health import (
    HealthCheckResult,
    HealthRegistry,
    HealthStatus,
    MessageQueueHealthCheck,
)
from reliable_messaging.memory import InMemoryBroker, InMemoryConnectionManager
from reliable_messaging.settings import MessagingSettings


@pytest.mark.asyncio
async def test_reachable_broker_is_healthy(
    broker: InMemoryBroker, settings: MessagingSettings
) -> None:
    check = MessageQueueHealthCheck(settings, connect=broker.connect)
    result = await check.check_health()
    assert check.name == "messagequeue"
    assert result.status is HealthStatus.HEALTHY
    assert broker.connections == set()


@pytest.mark.asyncio
async def test_probe_closes_its_connection_and_channel(
    settings: MessagingSettings,
) -> None:
    channel = MagicMock()
    channel.close = AsyncMock()
    connection = MagicMock()
    connection.channel = AsyncMock(return_value=channel)
    connection.close = AsyncMock()
    connect = AsyncMock(return_value=connection)

    result = await MessageQueueHealthCheck(settings, connect=connect).check_health()

    assert result.status is HealthStatus.HEALTHY
    assert connect.call_args.args[0] == settings.url
    channel.close.assert_awaited_once()
    connection.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_unreachable_broker_is_unhealthy(
    broker: InMemoryBroker, settings: MessagingSettings
) -> None:
    broker.available = False
    result = await MessageQueueHealthCheck(
        settings, connect=broker.connect
    ).check_health()
    assert result.status is HealthStatus.UNHEALTHY
    assert "unreachable" in result.description
    assert isinstance(result.error, ConnectionError)
    assert "guest:guest" not in result.description


@pytest.mark.asyncio
async def test_timeout_is_unhealthy(settings: MessagingSettings) -> None:
    async def hang(*args: object, **kwargs: object) -> None:
        await asyncio.sleep(10)

    result = await MessageQueueHealthCheck(settings, connect=hang).check_health()
    assert result.status is HealthStatus.UNHEALTHY
    assert "timed out" in result.description


@pytest.mark.asyncio
async def test_caller_cancellation_propagates(settings: MessagingSettings) -> None:
    started = asyncio.Event()

    async def hang(*args: object, **kwargs: object) -> None:
        started.set()
        await asyncio.sleep(10)

    settings = settings.model_copy(update={"health_check_timeout": 30.0})
    task = asyncio.create_task(
        MessageQueueHealthCheck(settings, connect=hang).check_health()
    )
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_degraded_when_application_connection_down(
    broker: InMemoryBroker, settings: MessagingSettings
) -> None:
    managed = InMemoryConnectionManager(broker, settings)
    check = MessageQueueHealthCheck(
        settings, connect=broker.connect, connection=managed
    )
    assert (await check.check_health()).status is HealthStatus.DEGRADED

    await managed.connect()
    assert (await check.check_health()).status is HealthStatus.HEALTHY
    await managed.close()


@pytest.mark.asyncio
async def test_registry_reports_worst_status(
    broker: InMemoryBroker, settings: MessagingSettings
) -> None:
    registry = HealthRegistry()
    registry.add(MessageQueueHealthCheck(settings, connect=broker.connect))
    registry.register("cache", lambda: True)
    slow = AsyncMock(return_value=HealthCheckResult.degraded("slow"))
    registry.register("search", slow)

    report = await registry.status()
    assert report["status"] == "degraded"
    assert report["components"]["messagequeue"]["status"] == "healthy"
    assert report["components"]["search"]["description"] == "slow"

    def broken() -> bool:
        raise RuntimeError("boom")

    registry.register("broken", broken)
    report = await registry.status()
    assert report["status"] == "unhealthy"
    assert report["components"]["broken"]["description"] == "boom"


@pytest.mark.asyncio
async def test_empty_registry_is_healthy() -> None:
    assert (await HealthRegistry().status())["status"] == "healthy"
