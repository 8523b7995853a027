"""Messaging exceptions for reliable-messaging."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence


class MessagingError(Exception):
    """Root exception for every messaging-related failure."""


class TopologyError(MessagingError, ValueError):
    """Raised when a topology descriptor is inconsistent.

    Usage: Topology validators raise this for duplicate queue names or
    bindings that reference an exchange missing from the topology.
    """


class MessagingSerializationError(MessagingError):
    """Raised when a message cannot be encoded or decoded."""


class MalformedPayloadError(MessagingSerializationError):
    """Raised when transport bytes are empty or do not decode to a message.

    A malformed delivery is never retried; it is dead-lettered immediately.
    """


class BrokerUnavailableError(MessagingError):
    """Raised when the broker cannot be reached or does not confirm in time."""


class BrokerConnectionRefusedError(BrokerUnavailableError):
    """Raised when no connection could be established after all attempts."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class PublishConfirmError(BrokerUnavailableError):
    """Raised when the broker negatively acknowledges or returns a message."""


class HandlerError(MessagingError):
    """Wraps an exception raised by a registered message handler."""

    def __init__(self, message_type: str, cause: BaseException) -> None:
        self.message_type = message_type
        self.cause = cause
        super().__init__(f"Handler for {message_type} failed: {cause!r}")


class HandlerRegistrationError(MessagingError):
    """Raised when a second handler is registered for the same queue and type."""


class BatchItemFailure:
    """One failed item of a batch publish."""

    __slots__ = ("index", "message", "error")

    def __init__(self, index: int, message: Any, error: MessagingError) -> None:
        self.index = index
        self.message = message
        self.error = error

    def __repr__(self) -> str:
        return f"BatchItemFailure(index={self.index}, error={self.error!r})"


class BatchPublishError(MessagingError):
    """Raised when one or more items of a batch publish failed.

    Items confirmed by the broker before or after a failure are not rolled
    back; ``published`` counts them.
    """

    def __init__(self, failures: Sequence[BatchItemFailure], published: int) -> None:
        self.failures = list(failures)
        self.published = published
        indexes = ", ".join(str(f.index) for f in self.failures)
        super().__init__(
            f"{len(self.failures)} message(s) failed to publish "
            f"(indexes: {indexes}); {published} published"
        )

    @property
    def failed_indexes(self) -> list[int]:
        return [f.index for f in self.failures]
