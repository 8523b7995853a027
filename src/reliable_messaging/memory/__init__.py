"""In-memory broker and connection manager for tests and local runs."""

from __future__ import annotations

from .broker import (
    InMemoryBroker,
    InMemoryChannel,
    InMemoryConnection,
    InMemoryIncomingMessage,
    StoredMessage,
    topic_matches,
)
from .connection import InMemoryConnectionManager

__all__ = [
    "InMemoryBroker",
    "InMemoryChannel",
    "InMemoryConnection",
    "InMemoryConnectionManager",
    "InMemoryIncomingMessage",
    "StoredMessage",
    "topic_matches",
]
