"""IdempotencyFilter — skip deliveries a queue has already processed.

Delivery is at-least-once, so a message can reach a handler again after a
lost ack. The filter is opt-in per consumer and keyed by queue and message
id: the same message fanned out to two queues is processed once per queue.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .ports import ICacheService


class IdempotencyFilter:
    """Remembers processed (queue, message_id) pairs.

    Uses an ICacheService when provided (e.g. Redis) so that several consumer
    processes share the record; otherwise a bounded in-memory LRU is used.
    """

    def __init__(
        self,
        cache: ICacheService | None = None,
        *,
        key_prefix: str = "processed:",
        ttl_seconds: int = 86400,
        max_entries: int = 100_000,
    ) -> None:
        """Configure the filter.

        Args:
            cache: Optional shared cache. If None, entries live in memory.
            key_prefix: Prefix for cache keys.
            ttl_seconds: Expiry of cache entries (ignored in memory).
            max_entries: Size bound of the in-memory record.
        """
        self._cache = cache
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._seen: OrderedDict[str, None] = OrderedDict()

    def _key(self, queue: str, message_id: str) -> str:
        return f"{self._key_prefix}{queue}:{message_id}"

    async def already_processed(self, queue: str, message_id: str) -> bool:
        key = self._key(queue, message_id)
        if self._cache is not None:
            return await self._cache.get(key) is not None
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        return False

    async def mark_processed(self, queue: str, message_id: str) -> None:
        key = self._key(queue, message_id)
        if self._cache is not None:
            await self._cache.set(key, "1", ttl=self._ttl_seconds)
            return
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)

    def clear_memory(self) -> None:
        """Forget in-memory entries (testing utility). No-op with a cache."""
        self._seen.clear()
