"""Dead-letter annotations and the optional on-dead-letter callback."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .retry import RETRY_COUNT_HEADER, truncate_error

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine, Mapping

logger = logging.getLogger(__name__)

DEAD_LETTER_REASON_HEADER = "x-dead-letter-reason"
DEAD_LETTER_DESCRIPTION_HEADER = "x-dead-letter-description"
DEAD_LETTERED_AT_HEADER = "x-dead-lettered-at"
EXCEPTION_TYPE_HEADER = "x-exception-type"
ORIGINAL_EXCHANGE_HEADER = "x-original-exchange"
ORIGINAL_ROUTING_KEY_HEADER = "x-original-routing-key"
ORIGINAL_QUEUE_HEADER = "x-original-queue"


class DeadLetterReason(str, enum.Enum):
    MALFORMED_PAYLOAD = "malformed_payload"
    NO_HANDLER = "no_handler"
    RETRIES_EXHAUSTED = "retries_exhausted"


@dataclass(frozen=True)
class DeadLetter:
    """A delivery that left its primary queue for good."""

    queue: str
    reason: DeadLetterReason
    description: str
    attempts: int
    body: bytes
    message_id: str | None = None
    message_type: str | None = None
    error: BaseException | None = None
    headers: dict[str, Any] = field(default_factory=dict)


def dead_letter_headers(
    headers: Mapping[str, Any] | None,
    *,
    queue: str,
    exchange: str,
    routing_key: str,
    reason: DeadLetterReason,
    description: str,
    attempts: int,
    error: BaseException | None = None,
) -> dict[str, Any]:
    """Copy *headers* and annotate them with the failure and final attempt count.

    The original exchange and routing key of the first delivery are kept when
    the message has already been through retry republishing.
    """
    annotated = dict(headers or {})
    annotated.setdefault(ORIGINAL_EXCHANGE_HEADER, exchange)
    annotated.setdefault(ORIGINAL_ROUTING_KEY_HEADER, routing_key)
    annotated[ORIGINAL_QUEUE_HEADER] = queue
    annotated[DEAD_LETTER_REASON_HEADER] = reason.value
    annotated[DEAD_LETTER_DESCRIPTION_HEADER] = description
    annotated[RETRY_COUNT_HEADER] = attempts
    annotated[DEAD_LETTERED_AT_HEADER] = datetime.now(timezone.utc).isoformat()
    if error is not None:
        annotated[EXCEPTION_TYPE_HEADER] = type(error).__name__
        annotated[DEAD_LETTER_DESCRIPTION_HEADER] = truncate_error(error)
    return annotated


class DeadLetterHandler:
    """Notifies application code when a delivery is dead-lettered.

    Caller provides an async callback that receives the DeadLetter; typically
    it raises an alert or stores the message for inspection. The broker-side
    routing has already happened when the callback runs.
    """

    def __init__(
        self,
        on_dead_letter: (
            Callable[[DeadLetter], Coroutine[Any, Any, None]] | None
        ) = None,
    ) -> None:
        self._on_dead_letter = on_dead_letter

    async def notify(self, letter: DeadLetter) -> None:
        """Run the callback; its failures are logged, never raised."""
        if self._on_dead_letter is None:
            return
        try:
            await self._on_dead_letter(letter)
        except Exception:
            logger.exception(
                "on_dead_letter callback failed for message %s", letter.message_id
            )
