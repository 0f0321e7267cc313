"""Accounting event emission.

Persists one BusinessEvent per emitted operation and hands it to the
registered handlers (double-entry posting lives downstream). Emission is
fire-and-forget for the caller: handler failures mark the event ``failed``
and are logged, never raised.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from motolease.events.emitter import AsyncEventEmitter
from motolease.events.types import BusinessEventData, EntityType, Operation
from motolease.models import BusinessEvent

logger = logging.getLogger(__name__)


class AccountingEventService:
    """Records business operations and dispatches them to handlers."""

    def __init__(self, emitter: AsyncEventEmitter | None = None):
        self.emitter = emitter or AsyncEventEmitter()

    async def emit(
        self,
        session: AsyncSession,
        operation: Operation | str,
        entity_type: EntityType | str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> str:
        """Persist and dispatch one business event.

        Args:
            session: Session whose transaction the event row joins
            operation: Operation id (``domain.entity.action``)
            entity_type: Type of the affected entity
            entity_id: Id of the affected entity
            payload: JSON-serializable details
            actor: User or ``system``

        Returns:
            Id of the persisted BusinessEvent.
        """
        operation_id = operation.value if isinstance(operation, Operation) else operation
        entity_type_name = (
            entity_type.value if isinstance(entity_type, EntityType) else entity_type
        )

        event = BusinessEvent(
            operation_id=operation_id,
            entity_type=entity_type_name,
            entity_id=entity_id,
            payload=payload or {},
            actor=actor,
            status="processing",
        )
        session.add(event)
        await session.flush()

        errors = await self.emitter.emit(
            BusinessEventData(
                event_id=event.id,
                operation_id=operation_id,
                entity_type=entity_type_name,
                entity_id=entity_id,
                payload=payload or {},
                actor=actor,
                timestamp=datetime.now(timezone.utc),
            )
        )

        if errors:
            event.status = "failed"
            event.error = "; ".join(str(e) for e in errors)
            logger.warning(
                "Event %s %s/%s stored with %d handler failure(s)",
                operation_id,
                entity_type_name,
                entity_id,
                len(errors),
            )
        else:
            event.status = "completed"

        await session.flush()
        return event.id
