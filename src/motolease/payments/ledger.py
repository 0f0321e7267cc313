"""Idempotent payment ledger.

Keeps exactly one GatewayPayment row per external payment id. Every
notification upserts that row; nothing else creates or mutates it.

Notes:
- The row is created with ``INSERT ... ON CONFLICT DO NOTHING``; later
  notifications update it in place with conditional ``UPDATE``s.
- ``external_payment_id``, ``flow_kind`` and the linked entity ids derived
  from the reference are fixed at creation.
- An open status (pending, in_process) never overwrites a settled one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from motolease.database import dialect_insert
from motolease.gateway.base import PaymentSnapshot
from motolease.models import GatewayPayment, new_id
from motolease.payments.references import (
    DecodedReference,
    flow_kind_for,
    linked_entity_ids,
)
from motolease.payments.status import (
    OPEN_STATUSES,
    PaymentStatus,
    map_gateway_status,
    may_overwrite,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    """Result of a ledger upsert.

    IMPORTANT: ``became_approved`` is informational. Transition handlers guard
    on the target entity's own state and must run for every approved
    notification, otherwise a crash between the ledger commit and the
    transition would never be repaired by redelivery.
    """

    record: GatewayPayment
    is_new: bool
    became_approved: bool

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus(self.record.status)


class PaymentLedger:
    """Upsert-only store of gateway payment mirrors."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert(
        self,
        snapshot: PaymentSnapshot,
        reference: DecodedReference,
        *,
        now: datetime | None = None,
    ) -> LedgerResult:
        """Create or update the record for ``snapshot.payment_id``.

        Args:
            snapshot: Authoritative payment state fetched from the gateway
            reference: Decoded external reference of the payment
            now: Timestamp to record as paid time (defaults to current UTC)

        Returns:
            LedgerResult with the stored record and whether this call created
            it or moved it to approved.
        """
        now = now or datetime.now(timezone.utc)
        status = map_gateway_status(snapshot.status)
        approved = status is PaymentStatus.APPROVED
        metadata = self._metadata(snapshot)

        insert_stmt = (
            dialect_insert(self.db, GatewayPayment.__table__)
            .values(
                id=new_id(),
                external_payment_id=snapshot.payment_id,
                flow_kind=flow_kind_for(reference).value,
                external_reference=snapshot.external_reference,
                amount=snapshot.transaction_amount,
                gateway_status=snapshot.status or None,
                status=status.value,
                paid_at=now if approved else None,
                **metadata,
                **linked_entity_ids(reference),
            )
            .on_conflict_do_nothing(index_elements=["external_payment_id"])
            .returning(GatewayPayment.__table__.c.id)
        )
        row = (await self.db.execute(insert_stmt)).first()

        if row is not None:
            record = await self.get(snapshot.payment_id)
            logger.info(
                "Ledgered new payment %s flow=%s status=%s",
                snapshot.payment_id,
                record.flow_kind,
                record.status,
            )
            return LedgerResult(record=record, is_new=True, became_approved=approved)

        became_approved = await self._apply_status(snapshot, status, metadata, now)

        record = await self.get(snapshot.payment_id)
        if not may_overwrite(record.status, status):
            logger.info(
                "Payment %s kept status %s; ignored stale %s",
                snapshot.payment_id,
                record.status,
                status.value,
            )
        return LedgerResult(record=record, is_new=False, became_approved=became_approved)

    async def _apply_status(
        self,
        snapshot: PaymentSnapshot,
        status: PaymentStatus,
        metadata: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Conditionally update status and details together.

        Status and gateway details always come from the same snapshot: a
        stale open snapshot touches neither. A replay that changes nothing
        matches no row, so the stored record stays unchanged.

        Returns:
            True if this call moved the record to approved.
        """
        values: dict[str, Any] = {
            "status": status.value,
            "gateway_status": snapshot.status or None,
            **metadata,
        }
        by_external_id = GatewayPayment.external_payment_id == snapshot.payment_id

        if status is PaymentStatus.APPROVED:
            result = await self.db.execute(
                update(GatewayPayment)
                .where(by_external_id, GatewayPayment.status != PaymentStatus.APPROVED.value)
                .values(paid_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True

        changed = or_(
            *(getattr(GatewayPayment, key).is_distinct_from(value) for key, value in values.items())
        )
        stmt = update(GatewayPayment).where(by_external_id, changed)
        if status in OPEN_STATUSES:
            stmt = stmt.where(GatewayPayment.status.in_([s.value for s in OPEN_STATUSES]))

        await self.db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return False

    @staticmethod
    def _metadata(snapshot: PaymentSnapshot) -> dict[str, Any]:
        """Mutable gateway details; absent values never erase stored ones."""
        candidates = {
            "gateway_status_detail": snapshot.status_detail,
            "payment_method_id": snapshot.payment_method_id,
            "payment_type_id": snapshot.payment_type_id,
            "net_amount": snapshot.net_received_amount,
            "fee_amount": snapshot.fee_total,
        }
        return {key: value for key, value in candidates.items() if value is not None}

    async def get(self, external_payment_id: str) -> GatewayPayment:
        """Load the record for an external payment id (must exist)."""
        result = await self.db.execute(
            select(GatewayPayment)
            .where(GatewayPayment.external_payment_id == external_payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def find(self, external_payment_id: str) -> GatewayPayment | None:
        """Load the record for an external payment id, if any."""
        result = await self.db.execute(
            select(GatewayPayment)
            .where(GatewayPayment.external_payment_id == external_payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def link_installment(self, payment_id: str, installment_id: str) -> bool:
        """Claim an installment for a recurring payment.

        Succeeds only while the record has no installment linked, so one
        payment can satisfy at most one installment.

        Args:
            payment_id: Local GatewayPayment id
            installment_id: Installment being satisfied

        Returns:
            True if the link was written by this call.
        """
        result = await self.db.execute(
            update(GatewayPayment)
            .where(
                GatewayPayment.id == payment_id,
                GatewayPayment.installment_id.is_(None),
            )
            .values(installment_id=installment_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
