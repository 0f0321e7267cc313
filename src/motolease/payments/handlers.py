"""Entity transition handlers.

One handler per payment flow. Each handler applies a guarded, idempotent
state change inside the caller's transaction and returns the ordered list of
post-commit effects to run once that transaction has committed.

Guards are conditional UPDATEs (``... WHERE state IN (:expected)``); the
affected row count, not a prior read, decides whether the transition
happened. A replayed notification therefore finds the guard already
satisfied and becomes a no-op with no effects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from motolease.events.accounting import AccountingEventService
from motolease.events.types import EntityType, Operation
from motolease.gateway.base import PaymentSnapshot
from motolease.models import (
    Asset,
    AssetStateHistory,
    Contract,
    GatewayPayment,
    Installment,
    PartsOrder,
    PartsOrderItem,
    RentalRequest,
)
from motolease.payments.effects import PostCommitEffect
from motolease.payments.ledger import PaymentLedger
from motolease.payments.references import (
    PartsOrderReference,
    RecurringContractReference,
    RentalRequestReference,
    SingleInstallmentReference,
)
from motolease.services.inventory import InventoryService, MovementKind, MovementRequest
from motolease.services.invoicing import InvoiceIssuer, InvoiceRequest
from motolease.services.lease_to_own import LeaseToOwnService
from motolease.services.state_machine import (
    OPEN_INSTALLMENT_STATES,
    AssetState,
    AssetStateMachine,
    InstallmentState,
    InstallmentStateMachine,
    PartsOrderState,
    PartsOrderStateMachine,
    RentalRequestState,
    RentalRequestStateMachine,
    StateMachine,
)

logger = logging.getLogger(__name__)

# Attempts at picking an open installment when a concurrent payment wins the race
MAX_SELECTION_ATTEMPTS = 3


class EntityNotFoundError(LookupError):
    """The entity a payment refers to does not exist (or has nothing to satisfy)."""

    def __init__(self, entity_type: EntityType, entity_id: str, reason: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        msg = f"{entity_type.value} {entity_id} not found"
        if reason:
            msg = f"{entity_type.value} {entity_id}: {reason}"
        super().__init__(msg)


class AlreadyAppliedError(Exception):
    """A concurrent delivery applied this payment first; roll back and no-op."""


@dataclass(frozen=True)
class TransitionContext:
    """Payment facts available to every handler."""

    record: GatewayPayment
    snapshot: PaymentSnapshot
    actor: str
    now: datetime

    @property
    def amount(self) -> Decimal:
        return self.snapshot.transaction_amount

    def log_context(self, **extra: Any) -> dict[str, Any]:
        """Identifiers needed to reprocess a failed effect by hand."""
        return {
            "external_payment_id": self.snapshot.payment_id,
            "payment_id": self.record.id,
            "external_reference": self.snapshot.external_reference,
            **extra,
        }


@dataclass
class TransitionOutcome:
    """What a handler did.

    ``applied`` is False when the guard was already satisfied (the normal
    idempotency path); such outcomes never carry effects.
    """

    entity_type: EntityType
    entity_id: str
    applied: bool
    effects: list[PostCommitEffect] = field(default_factory=list)
    detail: str = ""


@dataclass(frozen=True)
class Collaborators:
    """Downstream services reached through post-commit effects."""

    invoices: InvoiceIssuer
    accounting: AccountingEventService
    inventory: InventoryService
    lease_to_own: LeaseToOwnService


class TransitionHandler(Protocol):
    """Applies the domain transition for one reference variant."""

    async def apply(
        self,
        session: AsyncSession,
        reference: Any,
        context: TransitionContext,
    ) -> TransitionOutcome:
        ...


async def guarded_transition(
    session: AsyncSession,
    model: Any,
    entity_id: str,
    machine: type[StateMachine],
    from_states: list[str] | tuple[str, ...],
    to_state: str,
    **values: Any,
) -> bool:
    """Move an entity to ``to_state`` only if it is currently in ``from_states``.

    Returns:
        True if this call performed the transition.
    """
    sources = [str(getattr(s, "value", s)) for s in from_states]
    target = str(getattr(to_state, "value", to_state))
    for source in sources:
        machine.validate_transition(source, target)

    result = await session.execute(
        update(model)
        .where(model.id == entity_id, model.state.in_(sources))
        .values(state=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _load(session: AsyncSession, model: Any, entity_id: str, entity_type: EntityType) -> Any:
    entity = await session.get(model, entity_id, populate_existing=True)
    if entity is None:
        raise EntityNotFoundError(entity_type, entity_id)
    return entity


class BaseHandler:
    """Effect builders shared by the flow handlers."""

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    def invoice_effect(self, request: InvoiceRequest, context: dict[str, Any]) -> PostCommitEffect:
        async def issue(session: AsyncSession) -> None:
            await self.collaborators.invoices.issue_invoice(session, request)

        return PostCommitEffect(name="issue_invoice", action=issue, context=context)

    def accounting_effect(
        self,
        operation: Operation,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        actor: str,
        context: dict[str, Any],
    ) -> PostCommitEffect:
        async def emit(session: AsyncSession) -> None:
            await self.collaborators.accounting.emit(
                session, operation, entity_type, entity_id, payload, actor
            )

        return PostCommitEffect(name=f"emit:{operation.value}", action=emit, context=context)

    def movement_effect(self, movement: MovementRequest, context: dict[str, Any]) -> PostCommitEffect:
        async def record(session: AsyncSession) -> None:
            await self.collaborators.inventory.record_movement(session, movement)

        return PostCommitEffect(name="record_stock_movement", action=record, context=context)

    def lease_to_own_effect(self, actor: str, context: dict[str, Any]) -> PostCommitEffect:
        async def sweep(session: AsyncSession) -> None:
            transferred = await self.collaborators.lease_to_own.sweep(session, actor)
            logger.info("Lease-to-own sweep transferred %d contract(s)", len(transferred))

        return PostCommitEffect(name="lease_to_own_sweep", action=sweep, context=context)

    def installment_paid_effects(
        self,
        installment: Installment,
        contract: Contract,
        context: TransitionContext,
        bootstrapped_asset: bool,
    ) -> list[PostCommitEffect]:
        """Invoice and accounting effects for a freshly paid installment."""
        log_context = context.log_context(
            contract_id=contract.id, installment_id=installment.id
        )
        effects = [
            self.invoice_effect(
                InvoiceRequest(
                    payment_id=context.record.id,
                    client_id=contract.client_id,
                    amount=context.amount,
                    description=f"Installment {installment.sequence_number} "
                    f"of contract {contract.id}",
                    contract_id=contract.id,
                    installment_id=installment.id,
                    period_start=installment.due_date,
                ),
                log_context,
            ),
            self.accounting_effect(
                Operation.PAYMENT_APPROVE,
                EntityType.INSTALLMENT,
                installment.id,
                {
                    "external_payment_id": context.snapshot.payment_id,
                    "contract_id": contract.id,
                    "sequence_number": installment.sequence_number,
                    "amount": str(context.amount),
                },
                context.actor,
                log_context,
            ),
        ]
        if bootstrapped_asset:
            effects.append(
                self.accounting_effect(
                    Operation.ASSET_CHANGE_STATE,
                    EntityType.ASSET,
                    contract.asset_id,
                    {
                        "previous_state": AssetState.RESERVED.value,
                        "new_state": AssetState.RENTED.value,
                        "contract_id": contract.id,
                    },
                    context.actor,
                    log_context,
                )
            )
        return effects

    async def bootstrap_asset(
        self,
        session: AsyncSession,
        contract: Contract,
        context: TransitionContext,
    ) -> bool:
        """First-installment bootstrap: asset reserved -> rented.

        Three independently guarded steps: the asset move, its history
        record (only when the move happened), and the owning rental request
        approved -> delivered.

        Returns:
            True if the asset was moved by this call.
        """
        moved = await guarded_transition(
            session,
            Asset,
            contract.asset_id,
            AssetStateMachine,
            [AssetState.RESERVED],
            AssetState.RENTED,
            previous_state=AssetState.RESERVED.value,
        )
        if moved:
            session.add(
                AssetStateHistory(
                    asset_id=contract.asset_id,
                    previous_state=AssetState.RESERVED.value,
                    new_state=AssetState.RENTED.value,
                    reason=f"First installment paid, contract {contract.id}, "
                    f"payment {context.snapshot.payment_id}",
                    actor=context.actor,
                )
            )
            logger.info("Asset %s reserved -> rented (contract %s)", contract.asset_id, contract.id)

        if contract.rental_request_id:
            delivered = await guarded_transition(
                session,
                RentalRequest,
                contract.rental_request_id,
                RentalRequestStateMachine,
                [RentalRequestState.APPROVED],
                RentalRequestState.DELIVERED,
            )
            if delivered:
                logger.info("Rental request %s approved -> delivered", contract.rental_request_id)

        await session.flush()
        return moved


class RentalRequestHandler(BaseHandler):
    """First-month payment: rental request awaiting_payment -> paid."""

    async def apply(
        self,
        session: AsyncSession,
        reference: RentalRequestReference,
        context: TransitionContext,
    ) -> TransitionOutcome:
        request = await _load(
            session, RentalRequest, reference.request_id, EntityType.RENTAL_REQUEST
        )
        applied = await guarded_transition(
            session,
            RentalRequest,
            request.id,
            RentalRequestStateMachine,
            [RentalRequestState.AWAITING_PAYMENT],
            RentalRequestState.PAID,
            gateway_payment_id=context.snapshot.payment_id,
            paid_at=context.now,
        )
        if not applied:
            return TransitionOutcome(
                EntityType.RENTAL_REQUEST, request.id, False, detail=f"state={request.state}"
            )

        logger.info("Rental request %s -> paid", request.id)
        log_context = context.log_context(rental_request_id=request.id)
        description = "First month rental"
        if request.desired_model:
            description += f" {request.desired_model}"
        if request.plan:
            description += f" (plan {request.plan})"

        effects = [
            self.invoice_effect(
                InvoiceRequest(
                    payment_id=context.record.id,
                    client_id=request.client_id,
                    amount=request.first_month_amount,
                    description=description,
                    rental_request_id=request.id,
                    period_start=context.now.date(),
                ),
                log_context,
            ),
            self.accounting_effect(
                Operation.RENTAL_REQUEST_PAY,
                EntityType.RENTAL_REQUEST,
                request.id,
                {
                    "external_payment_id": context.snapshot.payment_id,
                    "amount": str(context.amount),
                },
                context.actor,
                log_context,
            ),
        ]
        return TransitionOutcome(EntityType.RENTAL_REQUEST, request.id, True, effects)


class SingleInstallmentHandler(BaseHandler):
    """Payment for one named installment."""

    async def apply(
        self,
        session: AsyncSession,
        reference: SingleInstallmentReference,
        context: TransitionContext,
    ) -> TransitionOutcome:
        installment = await _load(
            session, Installment, reference.installment_id, EntityType.INSTALLMENT
        )
        if installment.contract_id != reference.contract_id:
            logger.warning(
                "Installment %s belongs to contract %s, reference names %s",
                installment.id,
                installment.contract_id,
                reference.contract_id,
            )

        applied = await guarded_transition(
            session,
            Installment,
            installment.id,
            InstallmentStateMachine,
            OPEN_INSTALLMENT_STATES,
            InstallmentState.PAID,
            paid_amount=context.amount,
            paid_at=context.now,
        )
        if not applied:
            return TransitionOutcome(
                EntityType.INSTALLMENT, installment.id, False, detail=f"state={installment.state}"
            )

        logger.info(
            "Installment %s (#%d) of contract %s -> paid",
            installment.id,
            installment.sequence_number,
            installment.contract_id,
        )
        contract = await _load(session, Contract, installment.contract_id, EntityType.CONTRACT)
        bootstrapped = False
        if installment.sequence_number == 1:
            bootstrapped = await self.bootstrap_asset(session, contract, context)

        effects = self.installment_paid_effects(installment, contract, context, bootstrapped)
        return TransitionOutcome(EntityType.INSTALLMENT, installment.id, True, effects)


class RecurringContractHandler(BaseHandler):
    """Recurring charge: satisfies the oldest open installment of the contract."""

    async def apply(
        self,
        session: AsyncSession,
        reference: RecurringContractReference,
        context: TransitionContext,
    ) -> TransitionOutcome:
        # Row lock serializes concurrent payments for the same contract
        contract = await session.get(
            Contract, reference.contract_id, with_for_update=True, populate_existing=True
        )
        if contract is None:
            raise EntityNotFoundError(EntityType.CONTRACT, reference.contract_id)

        ledger = PaymentLedger(session)
        record = await ledger.get(context.snapshot.payment_id)
        if record.installment_id is not None:
            return TransitionOutcome(
                EntityType.INSTALLMENT,
                record.installment_id,
                False,
                detail="payment already linked",
            )

        installment = await self._claim_oldest_open(session, contract, context)
        if not await ledger.link_installment(record.id, installment.id):
            raise AlreadyAppliedError(
                f"Payment {context.snapshot.payment_id} was linked concurrently"
            )

        logger.info(
            "Installment #%d of contract %s -> paid (recurring)",
            installment.sequence_number,
            contract.id,
        )

        bootstrapped = False
        if installment.sequence_number == 1:
            bootstrapped = await self.bootstrap_asset(session, contract, context)

        effects = self.installment_paid_effects(installment, contract, context, bootstrapped)

        if contract.is_lease_to_own and await self._open_count(session, contract.id) == 0:
            logger.info("Contract %s fully paid; triggering lease-to-own sweep", contract.id)
            effects.append(
                self.lease_to_own_effect(
                    context.actor, context.log_context(contract_id=contract.id)
                )
            )

        return TransitionOutcome(EntityType.INSTALLMENT, installment.id, True, effects)

    async def _claim_oldest_open(
        self,
        session: AsyncSession,
        contract: Contract,
        context: TransitionContext,
    ) -> Installment:
        """Mark the earliest-due open installment paid and return it."""
        for _ in range(MAX_SELECTION_ATTEMPTS):
            result = await session.execute(
                select(Installment)
                .where(
                    Installment.contract_id == contract.id,
                    Installment.state.in_(OPEN_INSTALLMENT_STATES),
                )
                .order_by(Installment.due_date, Installment.sequence_number)
                .limit(1)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            candidate = result.scalar_one_or_none()
            if candidate is None:
                logger.warning(
                    "Recurring payment %s for contract %s but no pending installments",
                    context.snapshot.payment_id,
                    contract.id,
                )
                raise EntityNotFoundError(
                    EntityType.CONTRACT, contract.id, "no pending or overdue installment"
                )

            paid = await guarded_transition(
                session,
                Installment,
                candidate.id,
                InstallmentStateMachine,
                OPEN_INSTALLMENT_STATES,
                InstallmentState.PAID,
                paid_amount=context.amount,
                paid_at=context.now,
            )
            if paid:
                return candidate

        raise AlreadyAppliedError(
            f"Could not claim an installment of contract {contract.id} "
            f"after {MAX_SELECTION_ATTEMPTS} attempts"
        )

    @staticmethod
    async def _open_count(session: AsyncSession, contract_id: str) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(Installment)
            .where(
                Installment.contract_id == contract_id,
                Installment.state.in_(OPEN_INSTALLMENT_STATES),
            )
        )
        return int(result.scalar_one())


class PartsOrderHandler(BaseHandler):
    """Parts order payment: pending_payment -> paid, then stock egress per line."""

    async def apply(
        self,
        session: AsyncSession,
        reference: PartsOrderReference,
        context: TransitionContext,
    ) -> TransitionOutcome:
        order = await _load(session, PartsOrder, reference.order_id, EntityType.PARTS_ORDER)
        applied = await guarded_transition(
            session,
            PartsOrder,
            order.id,
            PartsOrderStateMachine,
            [PartsOrderState.PENDING_PAYMENT],
            PartsOrderState.PAID,
            gateway_payment_id=context.snapshot.payment_id,
            paid_at=context.now,
        )
        if not applied:
            return TransitionOutcome(
                EntityType.PARTS_ORDER, order.id, False, detail=f"state={order.state}"
            )

        logger.info("Parts order %s (#%d) -> paid", order.id, order.number)
        items = (
            await session.execute(
                select(PartsOrderItem)
                .where(PartsOrderItem.order_id == order.id)
                .order_by(PartsOrderItem.id)
            )
        ).scalars().all()

        effects: list[PostCommitEffect] = []
        for item in items:
            effects.append(
                self.movement_effect(
                    MovementRequest(
                        part_id=item.part_id,
                        kind=MovementKind.EGRESS,
                        quantity=item.quantity,
                        description=f"Sale, parts order #{order.number}",
                        unit_cost=item.unit_price,
                        reference_type=EntityType.PARTS_ORDER.value,
                        reference_id=order.id,
                        actor=context.actor,
                    ),
                    context.log_context(order_id=order.id, part_id=item.part_id),
                )
            )

        effects.append(
            self.accounting_effect(
                Operation.SALE_CONFIRM,
                EntityType.PARTS_ORDER,
                order.id,
                {
                    "external_payment_id": context.snapshot.payment_id,
                    "order_number": order.number,
                    "total": str(order.total),
                },
                context.actor,
                context.log_context(order_id=order.id),
            )
        )
        return TransitionOutcome(EntityType.PARTS_ORDER, order.id, True, effects)