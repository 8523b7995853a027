"""HandlerRegistry — explicit mapping of (queue, message type) to handler.

Populated at startup; consumers look the handler up by the decoded message
type instead of discovering handler classes at runtime.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from .exceptions import HandlerRegistrationError
from .messages import MessageTypeRegistry, message_type_name

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .messages import BaseMessage

    MessageHandler = Callable[[Any], Awaitable[None]]

H = TypeVar("H")


@runtime_checkable
class IMessageHandler(Protocol):
    """Class-based handler; ``handle`` raising means the delivery failed."""

    async def handle(self, message: Any) -> None: ...


class HandlerRegistry:
    """Registry of typed handlers per queue.

    Usage::

        registry = HandlerRegistry()

        @registry.handler("security-scan", ScanServer)
        async def scan(command: ScanServer) -> None:
            ...

        registry.register("indexing", IndexServer, IndexServerHandler())
    """

    def __init__(self, types: MessageTypeRegistry | None = None) -> None:
        self._types = types or MessageTypeRegistry()
        self._handlers: dict[str, dict[str, MessageHandler]] = {}

    @property
    def types(self) -> MessageTypeRegistry:
        """Message type registry fed by every registration."""
        return self._types

    def register(
        self,
        queue: str,
        message_class: type[BaseMessage],
        handler: MessageHandler | IMessageHandler,
    ) -> None:
        """Bind *handler* to messages of *message_class* arriving on *queue*."""
        name = message_type_name(message_class)
        if name in self._handlers.get(queue, {}):
            raise HandlerRegistrationError(
                f"A handler for {name!r} is already registered on queue {queue!r}"
            )
        existing = self._types.get(name)
        if existing is not None and existing is not message_class:
            raise HandlerRegistrationError(
                f"Message type name {name!r} already maps to {existing.__name__}"
            )
        if isinstance(handler, type):
            raise HandlerRegistrationError(
                f"Handler for {name!r} is the class {handler.__name__}; "
                "register an instance"
            )
        if callable(handler):
            func = handler
        elif isinstance(handler, IMessageHandler):
            func = handler.handle
        else:
            raise HandlerRegistrationError(
                f"Handler for {name!r} must be callable or define handle()"
            )
        self._handlers.setdefault(queue, {})[name] = func
        self._types.register(message_class, name)

    def handler(
        self, queue: str, message_class: type[BaseMessage]
    ) -> Callable[[H], H]:
        """Decorator form of :meth:`register`."""

        def decorator(func: H) -> H:
            self.register(queue, message_class, func)  # type: ignore[arg-type]
            return func

        return decorator

    def resolve(self, queue: str, message_type: str) -> MessageHandler | None:
        return self._handlers.get(queue, {}).get(message_type)

    def queues(self) -> list[str]:
        return list(self._handlers)

    def message_types(self, queue: str) -> list[str]:
        return list(self._handlers.get(queue, {}))
