"""Broker health probe and a registry that aggregates named checks."""

from __future__ import annotations

import asyncio
import datetime
import enum
import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aio_pika

from .settings import MessagingSettings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .ports import IConnectionManager

logger = logging.getLogger(__name__)


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthCheckResult:
    status: HealthStatus
    description: str = ""
    error: BaseException | None = None

    @classmethod
    def healthy(cls, description: str = "") -> HealthCheckResult:
        return cls(HealthStatus.HEALTHY, description)

    @classmethod
    def degraded(cls, description: str) -> HealthCheckResult:
        return cls(HealthStatus.DEGRADED, description)

    @classmethod
    def unhealthy(
        cls, description: str, error: BaseException | None = None
    ) -> HealthCheckResult:
        return cls(HealthStatus.UNHEALTHY, description, error)


class MessageQueueHealthCheck:
    """Checks that the broker accepts a fresh connection and channel.

    The probe uses its own short-lived connection so that it reports the
    broker's state, not the state of the application's pooled connection.
    When that managed connection is given and currently down while the broker
    is reachable, the result is Degraded.
    """

    name = "messagequeue"

    def __init__(
        self,
        settings: MessagingSettings | None = None,
        *,
        connect: Callable[..., Awaitable[Any]] | None = None,
        connection: IConnectionManager | None = None,
    ) -> None:
        self._settings = settings or MessagingSettings()
        self._connect = connect or aio_pika.connect
        self._connection = connection

    async def check_health(self) -> HealthCheckResult:
        """Probe the broker. Never raises, except on cancellation of the caller."""
        timeout = self._settings.health_check_timeout
        try:
            await asyncio.wait_for(self._probe(), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "RabbitMQ health check timed out after %ss (%s)",
                timeout,
                self._settings.safe_url,
            )
            return HealthCheckResult.unhealthy(
                f"RabbitMQ health check timed out after {timeout}s", e
            )
        except Exception as e:
            logger.warning(
                "RabbitMQ unreachable at %s: %r", self._settings.safe_url, e
            )
            return HealthCheckResult.unhealthy(
                f"RabbitMQ is unreachable at {self._settings.safe_url}", e
            )
        if self._connection is not None and not self._connection.is_connected:
            return HealthCheckResult.degraded(
                "RabbitMQ is reachable but the application connection is down"
            )
        return HealthCheckResult.healthy("RabbitMQ connection is healthy")

    async def _probe(self) -> None:
        connection = await self._connect(
            self._settings.url,
            timeout=self._settings.health_check_timeout,
            client_properties={
                "connection_name": f"{self._settings.connection_name}-health"
            },
        )
        try:
            channel = await connection.channel()
            await channel.close()
        finally:
            await connection.close()

    async def __call__(self) -> HealthCheckResult:
        return await self.check_health()


class HealthRegistry:
    """Registry of named health checks.

    A check is any callable returning (or awaiting to) a HealthCheckResult or
    a bool. The overall status is the worst component status.
    """

    def __init__(self) -> None:
        self._checks: dict[str, Callable[[], Any]] = {}

    def register(self, name: str, check: Callable[[], Any]) -> None:
        """Register a health check."""
        self._checks[name] = check

    def add(self, check: MessageQueueHealthCheck) -> None:
        self.register(check.name, check.check_health)

    async def check_all(self) -> dict[str, HealthCheckResult]:
        """Run all checks and return results by name."""
        results: dict[str, HealthCheckResult] = {}
        for name, check in self._checks.items():
            try:
                value = check()
                if inspect.isawaitable(value):
                    value = await value
            except Exception as e:  # noqa: BLE001
                results[name] = HealthCheckResult.unhealthy(str(e), e)
                continue
            if isinstance(value, HealthCheckResult):
                results[name] = value
            else:
                results[name] = (
                    HealthCheckResult.healthy()
                    if value
                    else HealthCheckResult.unhealthy("check failed")
                )
        return results

    async def status(self) -> dict[str, Any]:
        """Return full health status report."""
        results = await self.check_all()
        ranking = list(HealthStatus)
        overall = max(
            (r.status for r in results.values()),
            key=ranking.index,
            default=HealthStatus.HEALTHY,
        )
        return {
            "status": overall.value,
            "components": {
                name: {"status": r.status.value, "description": r.description}
                for name, r in results.items()
            },
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
