"""Event emitter for dispatching business events to handlers.

The emitter provides:
- Handler registration by operation pattern (``"sale.confirm"``,
  ``"commercial.*"`` or ``"*"``)
- Priority ordering (lower number runs first)
- Error isolation (handler failures don't break other handlers)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from motolease.events.types import BusinessEventData

logger = logging.getLogger(__name__)


@runtime_checkable
class AsyncEventHandler(Protocol):
    """Protocol for asynchronous event handlers."""

    async def __call__(self, event: BusinessEventData) -> None:
        """Handle a business event asynchronously."""
        ...


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    name: str
    handler: AsyncEventHandler
    pattern: str
    priority: int

    def matches(self, operation_id: str) -> bool:
        """Check whether this registration wants ``operation_id``."""
        if self.pattern == "*":
            return True
        if self.pattern.endswith(".*"):
            return operation_id.startswith(self.pattern[:-1])
        return operation_id == self.pattern


class AsyncEventEmitter:
    """Asynchronous event emitter.

    Usage:
        emitter = AsyncEventEmitter()

        async def post_payment_entry(event: BusinessEventData) -> None:
            ...

        emitter.on("commercial.payment.*", post_payment_entry, priority=50)
        errors = await emitter.emit(event)
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(
        self,
        pattern: str,
        handler: AsyncEventHandler,
        *,
        priority: int = 100,
        name: str | None = None,
    ) -> None:
        """Register async handler for an operation pattern."""
        self._handlers.append(
            HandlerRegistration(
                name=name or getattr(handler, "__name__", repr(handler)),
                handler=handler,
                pattern=pattern,
                priority=priority,
            )
        )
        self._handlers.sort(key=lambda reg: reg.priority)

    def off(self, handler: AsyncEventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [
            reg for reg in self._handlers if reg.handler is not handler
        ]

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def emit(self, event: BusinessEventData) -> list[Exception]:
        """Emit an event to all matching handlers, in priority order.

        Returns list of any exceptions raised by handlers.
        Handlers are isolated - failures don't stop other handlers.
        """
        errors: list[Exception] = []

        for reg in self._handlers:
            if not reg.matches(event.operation_id):
                continue

            try:
                await reg.handler(event)
            except Exception as e:
                logger.exception(
                    "Handler %s failed for event %s (%s %s)",
                    reg.name,
                    event.operation_id,
                    event.entity_type,
                    event.entity_id,
                )
                errors.append(e)

        return errors
