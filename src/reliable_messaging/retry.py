"""RetryPolicy — exponential backoff, max attempts, optional jitter.

Also home of the redelivery inspector that reads the attempt count from
broker headers.
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .settings import MessagingSettings

# Written by the consumer each time it republishes a failed delivery.
RETRY_COUNT_HEADER = "x-retry-count"
# Broker-native redelivery counter (RabbitMQ quorum queues).
DELIVERY_COUNT_HEADER = "x-delivery-count"
LAST_ERROR_HEADER = "x-last-error"

MAX_HEADER_ERROR_LENGTH = 500

# Set by the broker on delivery; never copied into a republished message.
BROKER_MANAGED_HEADERS = frozenset(
    {
        DELIVERY_COUNT_HEADER,
        "x-death",
        "x-first-death-exchange",
        "x-first-death-queue",
        "x-first-death-reason",
        "x-last-death-exchange",
        "x-last-death-queue",
        "x-last-death-reason",
    }
)


class RetryPolicy:
    """Configurable retry with exponential backoff and optional jitter."""

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        jitter: bool = False,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_attempts: Maximum number of delivery attempts (including first).
            base_delay: Initial delay in seconds before first retry.
            max_delay: Cap on delay in seconds.
            jitter: If True, add random jitter to delays to avoid thundering herd.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings: MessagingSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.base_retry_delay,
            max_delay=settings.max_retry_delay,
            jitter=settings.retry_jitter,
        )

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed (attempt is 1-based)."""
        return 1 <= attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        """Return delay in seconds after the given 1-based attempt failed.

        Uses exponential backoff: base_delay * 2^(attempt-1), capped by max_delay.
        If jitter is enabled, multiplies by a random factor in [0.5, 1.5].
        """
        if attempt < 1:
            return 0.0
        delay = min(
            self.base_delay * (2 ** (attempt - 1)),
            self.max_delay,
        )
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))

    async def wait_before_retry(self, attempt: int) -> None:
        """Async sleep for the delay of the given attempt."""
        d = self.delay_for_attempt(attempt)
        if d > 0:
            await asyncio.sleep(d)


def _as_int(value: Any) -> int:
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


class HeaderRedeliveryInspector:
    """Reads the number of attempts already made from AMQP headers.

    Prefers the consumer-maintained ``x-retry-count`` header and falls back
    to the broker's ``x-delivery-count`` so quorum-queue redeliveries are
    counted as well.
    """

    def __init__(
        self,
        retry_header: str = RETRY_COUNT_HEADER,
        delivery_count_header: str = DELIVERY_COUNT_HEADER,
    ) -> None:
        self._retry_header = retry_header
        self._delivery_count_header = delivery_count_header

    def attempts(self, headers: Mapping[str, Any] | None) -> int:
        if not headers:
            return 0
        return max(
            _as_int(headers.get(self._retry_header, 0)),
            _as_int(headers.get(self._delivery_count_header, 0)),
        )


def republishable_headers(headers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Copy of *headers* without the broker-managed entries."""
    return {
        key: value
        for key, value in (headers or {}).items()
        if key not in BROKER_MANAGED_HEADERS
    }


def truncate_error(error: BaseException) -> str:
    """Render an exception for a header value without bloating it."""
    text = f"{type(error).__name__}: {error}"
    if len(text) > MAX_HEADER_ERROR_LENGTH:
        return text[: MAX_HEADER_ERROR_LENGTH - 3] + "..."
    return text
