"""Spare parts inventory movements.

Every stock change goes through ``record_movement``: the part's stock is
adjusted with one conditional UPDATE and a StockMovement row records the
before/after values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from motolease.models import SparePart, StockMovement

logger = logging.getLogger(__name__)


class MovementKind(str, Enum):
    """Stock movement kinds."""

    INGRESS = "ingress"
    EGRESS = "egress"
    ADJUSTMENT_POSITIVE = "adjustment_positive"
    ADJUSTMENT_NEGATIVE = "adjustment_negative"
    RETURN = "return"


INBOUND_KINDS = frozenset(
    {MovementKind.INGRESS, MovementKind.ADJUSTMENT_POSITIVE, MovementKind.RETURN}
)


class PartNotFoundError(LookupError):
    """Raised when the referenced spare part does not exist."""


class InsufficientStockError(Exception):
    """Raised when an outbound movement would take stock below zero."""

    def __init__(self, part_id: str, available: int, requested: int):
        self.part_id = part_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for part {part_id}: available {available}, requested {requested}"
        )


@dataclass(frozen=True)
class MovementRequest:
    """One inventory movement."""

    part_id: str
    kind: MovementKind
    quantity: int
    description: str | None = None
    unit_cost: Decimal | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    actor: str | None = None


class InventoryService:
    """Records stock movements against spare parts."""

    async def record_movement(
        self, session: AsyncSession, request: MovementRequest
    ) -> StockMovement:
        """Apply a movement and return the stored StockMovement.

        Raises:
            ValueError: If quantity is not positive
            PartNotFoundError: If the part does not exist
            InsufficientStockError: If an outbound movement exceeds stock
                (negative adjustments may go below zero)
        """
        if request.quantity <= 0:
            raise ValueError("Movement quantity must be positive")

        kind = MovementKind(request.kind)
        delta = request.quantity if kind in INBOUND_KINDS else -request.quantity

        stmt = (
            update(SparePart)
            .where(SparePart.id == request.part_id)
            .values(stock=SparePart.stock + delta)
            .returning(SparePart.stock, SparePart.minimum_stock, SparePart.name)
            .execution_options(synchronize_session=False)
        )
        if delta < 0 and kind is not MovementKind.ADJUSTMENT_NEGATIVE:
            stmt = stmt.where(SparePart.stock + delta >= 0)

        row = (await session.execute(stmt)).first()
        if row is None:
            current = await session.execute(
                select(SparePart.stock).where(SparePart.id == request.part_id)
            )
            available = current.scalar_one_or_none()
            if available is None:
                raise PartNotFoundError(f"Spare part {request.part_id} not found")
            raise InsufficientStockError(request.part_id, available, request.quantity)

        stock_after, minimum_stock, name = row
        stock_before = stock_after - delta

        movement = StockMovement(
            part_id=request.part_id,
            kind=kind.value,
            quantity=delta,
            stock_before=stock_before,
            stock_after=stock_after,
            description=request.description,
            unit_cost=request.unit_cost,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
            actor=request.actor,
        )
        session.add(movement)
        await session.flush()

        if stock_after <= minimum_stock < stock_before:
            logger.warning(
                "Low stock on part %s (%s): %d (minimum %d)",
                request.part_id,
                name,
                stock_after,
                minimum_stock,
            )

        return movement
