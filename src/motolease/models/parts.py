"""Spare parts retail and inventory models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from motolease.models.base import Base, IdMixin, TimestampMixin


class SparePart(Base, IdMixin, TimestampMixin):
    """A stocked spare part."""

    __tablename__ = "spare_part"

    code: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchase_price: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )


class StockMovement(Base, IdMixin, TimestampMixin):
    """Append-only stock movement; ``quantity`` is the signed delta."""

    __tablename__ = "stock_movement"

    part_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("spare_part.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_before: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('ingress', 'egress', 'adjustment_positive', "
            "'adjustment_negative', 'return')",
            name="stock_movement_kind_check",
        ),
    )


class PartsOrder(Base, IdMixin, TimestampMixin):
    """A retail order for spare parts."""

    __tablename__ = "parts_order"

    number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    state: Mapped[str] = mapped_column(String, nullable=False, default="pending_payment")
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "state IN ('pending_payment', 'paid', 'delivered', 'cancelled')",
            name="parts_order_state_check",
        ),
    )

    items: Mapped[list[PartsOrderItem]] = relationship(back_populates="order")


class PartsOrderItem(Base, IdMixin):
    """A line item of a parts order."""

    __tablename__ = "parts_order_item"

    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("parts_order.id", ondelete="CASCADE"), nullable=False
    )
    part_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("spare_part.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="parts_order_item_quantity_ck"),
    )

    order: Mapped[PartsOrder] = relationship(back_populates="items")
