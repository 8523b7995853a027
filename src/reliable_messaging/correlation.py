"""Correlation ID management — propagated across asynchronous boundaries."""

from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

# ContextVar for correlation/causation tracking across async boundaries.
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_causation_id: ContextVar[str | None] = ContextVar("causation_id", default=None)


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return _correlation_id.get()


def get_causation_id() -> str | None:
    """Get current causation ID from context."""
    return _causation_id.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


@contextlib.contextmanager
def correlation_scope(
    correlation_id: str | None,
    causation_id: str | None = None,
) -> Iterator[None]:
    """Install correlation/causation ids for the duration of the block.

    Consumers wrap handler execution in this scope so that messages created
    by the handler inherit the correlation id of the delivery.
    """
    corr_token = _correlation_id.set(correlation_id)
    cause_token = _causation_id.set(causation_id)
    try:
        yield
    finally:
        _causation_id.reset(cause_token)
        _correlation_id.reset(corr_token)
