"""Leasing models: rental requests, contracts, installments and assets."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from motolease.models.base import Base, IdMixin, TimestampMixin


class Asset(Base, IdMixin, TimestampMixin):
    """A physical motorcycle in the fleet."""

    __tablename__ = "asset"

    plate: Mapped[str | None] = mapped_column(String, nullable=True)
    brand: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False, default="available")
    previous_state: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "state IN ('available', 'reserved', 'rented', 'in_service', "
            "'transferred', 'decommissioned')",
            name="asset_state_check",
        ),
    )

    history: Mapped[list[AssetStateHistory]] = relationship(back_populates="asset")


class AssetStateHistory(Base, IdMixin, TimestampMixin):
    """Append-only record of asset state changes."""

    __tablename__ = "asset_state_history"

    asset_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("asset.id", ondelete="CASCADE"), nullable=False
    )
    previous_state: Mapped[str] = mapped_column(String, nullable=False)
    new_state: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    actor: Mapped[str] = mapped_column(String, nullable=False)

    asset: Mapped[Asset] = relationship(back_populates="history")


class RentalRequest(Base, IdMixin, TimestampMixin):
    """A prospective lease before a contract exists."""

    __tablename__ = "rental_request"

    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False, default="created")
    plan: Mapped[str | None] = mapped_column(String, nullable=True)
    desired_model: Mapped[str | None] = mapped_column(String, nullable=True)
    first_month_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "state IN ('created', 'awaiting_payment', 'paid', 'approved', "
            "'waitlisted', 'assigned', 'delivered', 'rejected', 'cancelled')",
            name="rental_request_state_check",
        ),
    )


class Contract(Base, IdMixin, TimestampMixin):
    """An active lease agreement between a client and an asset."""

    __tablename__ = "contract"

    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("asset.id"), nullable=False
    )
    rental_request_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("rental_request.id"), nullable=True
    )
    state: Mapped[str] = mapped_column(String, nullable=False, default="active")
    is_lease_to_own: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)
    transferred_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "state IN ('pending', 'active', 'finalized', 'finalized_purchase', 'cancelled')",
            name="contract_state_check",
        ),
    )

    asset: Mapped[Asset] = relationship()
    installments: Mapped[list[Installment]] = relationship(
        back_populates="contract", order_by="Installment.due_date"
    )


class Installment(Base, IdMixin, TimestampMixin):
    """One scheduled payment belonging to a contract."""

    __tablename__ = "installment"

    contract_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("contract.id", ondelete="CASCADE"), nullable=False
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    paid_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("contract_id", "sequence_number", name="installment_sequence_unique"),
        CheckConstraint(
            "state IN ('pending', 'overdue', 'paid')",
            name="installment_state_check",
        ),
        Index("installment_contract_due_idx", "contract_id", "state", "due_date"),
    )

    contract: Mapped[Contract] = relationship(back_populates="installments")
