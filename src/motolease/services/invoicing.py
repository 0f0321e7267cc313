"""Invoice issuance for approved gateway payments.

Idempotent per payment: issuing twice for the same payment returns the
existing invoice. Fiscal numbering and authorization codes are handled by a
downstream collaborator and are not part of this record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from motolease.database import dialect_insert
from motolease.models import Invoice, new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvoiceRequest:
    """Everything needed to invoice one payment."""

    payment_id: str
    client_id: str
    amount: Decimal
    description: str
    rental_request_id: str | None = None
    contract_id: str | None = None
    installment_id: str | None = None
    order_id: str | None = None
    period_start: date | None = None
    period_end: date | None = None


@dataclass(frozen=True)
class IssueResult:
    """Result of an issuance call.

    ``is_new`` is False when an invoice already existed for the payment.
    """

    invoice_id: str
    is_new: bool


class InvoiceIssuer(Protocol):
    """Anything that can issue an invoice inside a session."""

    async def issue_invoice(self, session: AsyncSession, request: InvoiceRequest) -> IssueResult:
        ...


class InvoiceService:
    """Stores one invoice per gateway payment."""

    async def issue_invoice(self, session: AsyncSession, request: InvoiceRequest) -> IssueResult:
        """Issue the invoice for ``request.payment_id`` unless it already exists.

        Raises:
            ValueError: If the amount is not positive
        """
        if request.amount <= 0:
            raise ValueError("Invoice amount must be positive")

        stmt = (
            dialect_insert(session, Invoice.__table__)
            .values(
                id=new_id(),
                payment_id=request.payment_id,
                client_id=request.client_id,
                rental_request_id=request.rental_request_id,
                contract_id=request.contract_id,
                installment_id=request.installment_id,
                order_id=request.order_id,
                amount=request.amount,
                description=request.description,
                period_start=request.period_start,
                period_end=request.period_end,
            )
            .on_conflict_do_nothing(index_elements=["payment_id"])
            .returning(Invoice.__table__.c.id)
        )
        row = (await session.execute(stmt)).first()

        if row is not None:
            logger.info("Invoice %s issued for payment %s", row[0], request.payment_id)
            return IssueResult(invoice_id=row[0], is_new=True)

        existing = await session.execute(
            select(Invoice.id).where(Invoice.payment_id == request.payment_id)
        )
        invoice_id = existing.scalar_one_or_none()
        if invoice_id is None:
            raise RuntimeError("Invoice issuance failed unexpectedly - no invoice created or found")

        logger.info("Invoice for payment %s already issued (%s)", request.payment_id, invoice_id)
        return IssueResult(invoice_id=invoice_id, is_new=False)
