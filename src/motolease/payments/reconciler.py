"""Payment notification processing.

A notification only carries a payment id. Processing re-fetches the
authoritative payment from the gateway and then runs three independent
steps, each committed on its own:

1. ledger upsert (always, for every status and every reference)
2. entity transition (approved payments with a routable reference)
3. post-commit effects (invoice, inventory, accounting, lease-to-own)

A failure in a later step never undoes an earlier one. Notifications may
arrive duplicated, reordered or concurrently; every step is safe to repeat.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import select, update

from motolease.database import SessionFactory, session_scope
from motolease.events.accounting import AccountingEventService
from motolease.events.emitter import AsyncEventEmitter
from motolease.gateway.base import GatewayError, PaymentGateway
from motolease.models import GatewaySubscription
from motolease.payments.effects import EffectReport, SideEffectOrchestrator
from motolease.payments.handlers import (
    AlreadyAppliedError,
    Collaborators,
    EntityNotFoundError,
    TransitionContext,
)
from motolease.payments.ledger import PaymentLedger
from motolease.payments.references import UnrecognizedReference, decode
from motolease.payments.router import TransitionRouter
from motolease.payments.status import PaymentStatus, map_gateway_status
from motolease.services.inventory import InventoryService
from motolease.services.invoicing import InvoiceService
from motolease.services.lease_to_own import LeaseToOwnService

logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, Enum):
    """How far processing of one notification got."""

    GATEWAY_NOT_FOUND = "gateway_not_found"
    GATEWAY_ERROR = "gateway_error"
    LEDGERED = "ledgered"
    TRANSITIONED = "transitioned"
    ALREADY_APPLIED = "already_applied"
    ENTITY_MISSING = "entity_missing"
    UNROUTABLE = "unroutable"


@dataclass
class ReconciliationResult:
    """Result of processing one payment notification."""

    external_payment_id: str
    outcome: ReconciliationOutcome
    status: PaymentStatus | None = None
    flow_kind: str | None = None
    is_new: bool = False
    entity_type: str | None = None
    entity_id: str | None = None
    effects: list[EffectReport] = field(default_factory=list)
    detail: str = ""

    @property
    def effects_failed(self) -> list[EffectReport]:
        return [report for report in self.effects if not report.succeeded]


@dataclass
class SubscriptionSyncResult:
    """Result of syncing one recurring-charge authorization."""

    preapproval_id: str
    synced: bool
    status: str | None = None
    detail: str = ""


class PaymentReconciler:
    """Turns gateway notifications into ledger records and domain transitions."""

    def __init__(
        self,
        session_factory: SessionFactory,
        gateway: PaymentGateway,
        router: TransitionRouter,
        orchestrator: SideEffectOrchestrator | None = None,
        actor: str = "system",
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.router = router
        self.orchestrator = orchestrator or SideEffectOrchestrator(session_factory)
        self.actor = actor

    @classmethod
    def build(
        cls,
        session_factory: SessionFactory,
        gateway: PaymentGateway,
        *,
        emitter: AsyncEventEmitter | None = None,
        actor: str = "system",
    ) -> PaymentReconciler:
        """Wire the reconciler with the default collaborators."""
        accounting = AccountingEventService(emitter)
        collaborators = Collaborators(
            invoices=InvoiceService(),
            accounting=accounting,
            inventory=InventoryService(),
            lease_to_own=LeaseToOwnService(accounting),
        )
        return cls(
            session_factory,
            gateway,
            TransitionRouter.default(collaborators),
            actor=actor,
        )

    async def process_payment(self, external_payment_id: str) -> ReconciliationResult:
        """Process a payment notification end to end.

        Gateway failures are reported in the result, not raised. Errors
        while writing the ledger or the transition propagate.
        """
        external_payment_id = str(external_payment_id)

        try:
            snapshot = await self.gateway.get_payment(external_payment_id)
        except GatewayError as e:
            logger.error("Gateway lookup failed for payment %s: %s", external_payment_id, e)
            return ReconciliationResult(
                external_payment_id, ReconciliationOutcome.GATEWAY_ERROR, detail=str(e)
            )

        if snapshot is None:
            logger.warning("Payment %s not found on gateway", external_payment_id)
            return ReconciliationResult(external_payment_id, ReconciliationOutcome.GATEWAY_NOT_FOUND)

        reference = decode(snapshot.external_reference)
        now = datetime.now(timezone.utc)

        async with session_scope(self.session_factory) as session:
            ledgered = await PaymentLedger(session).upsert(snapshot, reference, now=now)

        status = map_gateway_status(snapshot.status)
        result = ReconciliationResult(
            external_payment_id,
            ReconciliationOutcome.LEDGERED,
            status=status,
            flow_kind=ledgered.record.flow_kind,
            is_new=ledgered.is_new,
        )

        if isinstance(reference, UnrecognizedReference):
            logger.warning(
                "Payment %s has unrecognized reference %r; ledgered without transition",
                external_payment_id,
                reference.raw,
            )
            result.outcome = ReconciliationOutcome.UNROUTABLE
            return result

        context = TransitionContext(
            record=ledgered.record,
            snapshot=snapshot,
            actor=self.actor,
            now=now,
        )

        try:
            async with session_scope(self.session_factory) as session:
                outcome = await self.router.route(session, status, reference, context)
        except EntityNotFoundError as e:
            logger.warning("Payment %s: %s", external_payment_id, e)
            result.outcome = ReconciliationOutcome.ENTITY_MISSING
            result.entity_type = e.entity_type.value
            result.entity_id = e.entity_id
            result.detail = str(e)
            return result
        except AlreadyAppliedError as e:
            logger.info("Payment %s already applied: %s", external_payment_id, e)
            result.outcome = ReconciliationOutcome.ALREADY_APPLIED
            result.detail = str(e)
            return result

        if outcome is None:
            return result

        result.entity_type = outcome.entity_type.value
        result.entity_id = outcome.entity_id
        result.detail = outcome.detail

        if not outcome.applied:
            logger.info(
                "Payment %s: %s %s already transitioned (%s)",
                external_payment_id,
                outcome.entity_type.value,
                outcome.entity_id,
                outcome.detail,
            )
            result.outcome = ReconciliationOutcome.ALREADY_APPLIED
            return result

        result.outcome = ReconciliationOutcome.TRANSITIONED
        result.effects = await self.orchestrator.run(outcome.effects)
        if result.effects_failed:
            logger.warning(
                "Payment %s transitioned with %d failed side effect(s)",
                external_payment_id,
                len(result.effects_failed),
            )
        return result

    async def process_subscription(self, preapproval_id: str) -> SubscriptionSyncResult:
        """Refresh the stored status of a recurring-charge authorization.

        Unknown authorizations are logged and skipped without calling the
        gateway. Gateway failures are logged and reported, not raised.
        """
        preapproval_id = str(preapproval_id)

        async with session_scope(self.session_factory) as session:
            found = await session.execute(
                select(GatewaySubscription.id).where(
                    GatewaySubscription.preapproval_id == preapproval_id
                )
            )
            subscription_id = found.scalar_one_or_none()

        if subscription_id is None:
            logger.warning("Subscription %s not found locally; ignoring", preapproval_id)
            return SubscriptionSyncResult(preapproval_id, False, detail="unknown subscription")

        try:
            preapproval = await self.gateway.get_preapproval(preapproval_id)
        except GatewayError:
            logger.exception("Failed to fetch subscription %s from gateway", preapproval_id)
            return SubscriptionSyncResult(preapproval_id, False, detail="gateway error")

        if preapproval is None:
            logger.warning("Subscription %s not found on gateway", preapproval_id)
            return SubscriptionSyncResult(preapproval_id, False, detail="not found on gateway")

        status = preapproval.status or "unknown"
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(GatewaySubscription)
                .where(GatewaySubscription.id == subscription_id)
                .values(gateway_status=status)
                .execution_options(synchronize_session=False)
            )

        logger.info("Subscription %s status -> %s", preapproval_id, status)
        return SubscriptionSyncResult(preapproval_id, True, status=status)
