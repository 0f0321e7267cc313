"""Payment gateway mirror, subscription and invoice models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from motolease.models.base import Base, IdMixin, TimestampMixin


class GatewayPayment(Base, IdMixin, TimestampMixin):
    """Local mirror of one external gateway payment.

    Idempotent by ``external_payment_id``. Rows are updated in place on every
    notification and never deleted.
    """

    __tablename__ = "gateway_payment"

    external_payment_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    flow_kind: Mapped[str] = mapped_column(String, nullable=False)
    external_reference: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    gateway_status: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_status_detail: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_method_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_type_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    net_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    fee_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    rental_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contract_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    installment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "flow_kind IN ('first_month', 'single_installment', "
            "'recurring_installment', 'parts_order')",
            name="gateway_payment_flow_kind_ck",
        ),
        CheckConstraint(
            "status IN ('approved', 'rejected', 'pending', 'in_process', "
            "'cancelled', 'refunded')",
            name="gateway_payment_status_ck",
        ),
        Index("gateway_payment_contract_idx", "contract_id"),
    )


class GatewaySubscription(Base, IdMixin, TimestampMixin):
    """Recurring charge authorization (preapproval) registered with the gateway."""

    __tablename__ = "gateway_subscription"

    preapproval_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    contract_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("contract.id"), nullable=False
    )
    gateway_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Invoice(Base, IdMixin, TimestampMixin):
    """Invoice issued for an approved gateway payment. One per payment."""

    __tablename__ = "invoice"

    payment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("gateway_payment.id"), nullable=False, unique=True
    )
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rental_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contract_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    installment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="invoice_amount_ck"),
    )
