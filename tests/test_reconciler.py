"""Tests for PaymentReconciler - notification processing end to end.

Tests verify:
1. Each flow transitions its entity exactly once and runs its effects
2. Replays, reordering and redelivery after a crash are harmless
3. Gateway failures and unknown references abort without raising
4. Side-effect failures never undo the transition
"""

import asyncio
import logging
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from motolease.database import session_scope
from motolease.events.accounting import AccountingEventService
from motolease.gateway.base import GatewayUnavailableError
from motolease.models import (
    Asset,
    AssetStateHistory,
    BusinessEvent,
    Contract,
    GatewayPayment,
    GatewaySubscription,
    Installment,
    Invoice,
    PartsOrder,
    RentalRequest,
    SparePart,
    StockMovement,
)
from motolease.payments.handlers import Collaborators
from motolease.payments.ledger import PaymentLedger
from motolease.payments.reconciler import PaymentReconciler, ReconciliationOutcome
from motolease.payments.references import decode
from motolease.payments.router import TransitionRouter
from motolease.payments.status import PaymentStatus
from motolease.services.inventory import InventoryService
from motolease.services.lease_to_own import LeaseToOwnService

pytestmark = pytest.mark.asyncio


async def operations(test_data) -> list[str]:
    events = await test_data.all(BusinessEvent)
    return sorted(event.operation_id for event in events)


class TestFirstMonthFlow:
    """Payment for a rental request's first month."""

    async def test_marks_request_paid(self, reconciler, gateway, test_data):
        request_id = await test_data.rental_request()
        gateway.register_payment(
            "mp-100",
            external_reference=f"solicitud:{request_id}",
            transaction_amount="150000.00",
        )

        result = await reconciler.process_payment("mp-100")

        assert result.outcome is ReconciliationOutcome.TRANSITIONED
        assert result.status is PaymentStatus.APPROVED
        assert result.flow_kind == "first_month"
        assert result.entity_id == request_id
        assert all(report.succeeded for report in result.effects)

        request = await test_data.get(RentalRequest, request_id)
        assert request.state == "paid"
        assert request.gateway_payment_id == "mp-100"
        assert request.paid_at is not None

        invoices = await test_data.all(Invoice)
        assert len(invoices) == 1
        assert invoices[0].rental_request_id == request_id
        assert invoices[0].amount == Decimal("150000.00")
        assert await operations(test_data) == ["solicitud.pay"]

    async def test_replay_is_noop(self, reconciler, gateway, test_data):
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-100", external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")

        await reconciler.process_payment("mp-100")
        replay = await reconciler.process_payment("mp-100")

        assert replay.outcome is ReconciliationOutcome.ALREADY_APPLIED
        assert replay.effects == []
        assert len(await test_data.all(GatewayPayment)) == 1
        assert len(await test_data.all(Invoice)) == 1
        assert await operations(test_data) == ["solicitud.pay"]

    async def test_pending_then_approved(self, reconciler, gateway, test_data):
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-100", status="pending",
                                 external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")

        pending = await reconciler.process_payment("mp-100")
        assert pending.outcome is ReconciliationOutcome.LEDGERED
        assert (await test_data.get(RentalRequest, request_id)).state == "awaiting_payment"

        gateway.set_status("mp-100", "approved")
        approved = await reconciler.process_payment("mp-100")

        assert approved.outcome is ReconciliationOutcome.TRANSITIONED
        assert (await test_data.get(RentalRequest, request_id)).state == "paid"
        assert len(await test_data.all(GatewayPayment)) == 1

    async def test_stale_pending_after_approved(self, reconciler, gateway, test_data):
        """Out-of-order delivery leaves the ledger approved and the request paid."""
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-100", external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")
        await reconciler.process_payment("mp-100")

        gateway.set_status("mp-100", "pending")
        stale = await reconciler.process_payment("mp-100")

        assert stale.outcome is ReconciliationOutcome.LEDGERED
        records = await test_data.all(GatewayPayment)
        assert records[0].status == "approved"
        assert (await test_data.get(RentalRequest, request_id)).state == "paid"

    async def test_request_not_awaiting_payment_is_untouched(self, reconciler, gateway, test_data):
        request_id = await test_data.rental_request(state="cancelled")
        gateway.register_payment("mp-100", external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")

        result = await reconciler.process_payment("mp-100")

        assert result.outcome is ReconciliationOutcome.ALREADY_APPLIED
        assert (await test_data.get(RentalRequest, request_id)).state == "cancelled"
        assert await test_data.all(Invoice) == []

    async def test_ledgered_before_crash_is_repaired_by_redelivery(
        self, reconciler, gateway, session_factory, test_data
    ):
        """A record already approved but never transitioned is finished on redelivery."""
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-100", external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")
        snapshot = await gateway.get_payment("mp-100")
        async with session_scope(session_factory) as session:
            await PaymentLedger(session).upsert(snapshot, decode(snapshot.external_reference))

        result = await reconciler.process_payment("mp-100")

        assert result.outcome is ReconciliationOutcome.TRANSITIONED
        assert (await test_data.get(RentalRequest, request_id)).state == "paid"


class TestSingleInstallmentFlow:
    """Payment for one named installment."""

    async def test_first_installment_bootstraps_asset(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(installments=3)
        first = seeded.installment_ids[0]
        gateway.register_payment(
            "mp-200",
            external_reference=f"cuota:{first}:contrato:{seeded.contract_id}",
            transaction_amount="120000.00",
        )

        result = await reconciler.process_payment("mp-200")

        assert result.outcome is ReconciliationOutcome.TRANSITIONED
        installment = await test_data.get(Installment, first)
        assert installment.state == "paid"
        assert installment.paid_amount == Decimal("120000.00")

        asset = await test_data.get(Asset, seeded.asset_id)
        assert asset.state == "rented"
        assert asset.previous_state == "reserved"
        history = await test_data.all(AssetStateHistory)
        assert len(history) == 1
        assert (history[0].previous_state, history[0].new_state) == ("reserved", "rented")

        request = await test_data.get(RentalRequest, seeded.rental_request_id)
        assert request.state == "delivered"

        invoices = await test_data.all(Invoice)
        assert len(invoices) == 1
        assert invoices[0].installment_id == first
        assert invoices[0].period_start == date(2026, 1, 10)
        assert await operations(test_data) == [
            "commercial.payment.approve",
            "fleet.moto.changeState",
        ]

    async def test_replay_does_not_bootstrap_twice(self, reconciler, gateway, test_data):
        seeded = await test_data.contract()
        first = seeded.installment_ids[0]
        gateway.register_payment("mp-200",
                                 external_reference=f"cuota:{first}:contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        await reconciler.process_payment("mp-200")
        replay = await reconciler.process_payment("mp-200")

        assert replay.outcome is ReconciliationOutcome.ALREADY_APPLIED
        assert len(await test_data.all(AssetStateHistory)) == 1
        assert len(await test_data.all(Invoice)) == 1

    async def test_later_installment_leaves_asset_alone(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(paid=1, asset_state="rented", request_state="delivered")
        second = seeded.installment_ids[1]
        gateway.register_payment("mp-201",
                                 external_reference=f"cuota:{second}:contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        result = await reconciler.process_payment("mp-201")

        assert result.outcome is ReconciliationOutcome.TRANSITIONED
        assert (await test_data.get(Installment, second)).state == "paid"
        assert (await test_data.get(Asset, seeded.asset_id)).state == "rented"
        assert await test_data.all(AssetStateHistory) == []
        assert await operations(test_data) == ["commercial.payment.approve"]

    async def test_overdue_installment_can_be_paid(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(paid=1, overdue=(2,), asset_state="rented")
        second = seeded.installment_ids[1]
        gateway.register_payment("mp-202",
                                 external_reference=f"cuota:{second}:contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        await reconciler.process_payment("mp-202")

        assert (await test_data.get(Installment, second)).state == "paid"

    async def test_missing_installment(self, reconciler, gateway, test_data):
        gateway.register_payment("mp-203", external_reference="cuota:nope:contrato:ctr-x",
                                 transaction_amount="120000.00")

        result = await reconciler.process_payment("mp-203")

        assert result.outcome is ReconciliationOutcome.ENTITY_MISSING
        assert result.entity_type == "Installment"
        assert result.entity_id == "nope"
        # Ledger still records the payment
        records = await test_data.all(GatewayPayment)
        assert len(records) == 1
        assert records[0].status == "approved"


class TestRecurringFlow:
    """Recurring charges against a contract."""

    async def test_pays_oldest_open_installment(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(installments=3)
        gateway.register_payment("mp-300", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")
        gateway.register_payment("mp-301", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        first = await reconciler.process_payment("mp-300")
        second = await reconciler.process_payment("mp-301")

        assert first.entity_id == seeded.installment_ids[0]
        assert second.entity_id == seeded.installment_ids[1]
        states = [
            (await test_data.get(Installment, installment_id)).state
            for installment_id in seeded.installment_ids
        ]
        assert states == ["paid", "paid", "pending"]

        records = {r.external_payment_id: r for r in await test_data.all(GatewayPayment)}
        assert records["mp-300"].installment_id == seeded.installment_ids[0]
        assert records["mp-301"].installment_id == seeded.installment_ids[1]

    async def test_replay_does_not_pay_next_installment(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(installments=3)
        gateway.register_payment("mp-300", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        await reconciler.process_payment("mp-300")
        replay = await reconciler.process_payment("mp-300")

        assert replay.outcome is ReconciliationOutcome.ALREADY_APPLIED
        assert (await test_data.get(Installment, seeded.installment_ids[1])).state == "pending"
        assert len(await test_data.all(Invoice)) == 1

    async def test_earliest_due_date_wins_over_sequence(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(
            installments=2,
            due_dates=[date(2026, 5, 10), date(2026, 4, 10)],
        )
        gateway.register_payment("mp-300", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        result = await reconciler.process_payment("mp-300")

        assert result.entity_id == seeded.installment_ids[1]

    async def test_same_due_date_uses_lowest_sequence(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(
            installments=2,
            due_dates=[date(2026, 4, 10), date(2026, 4, 10)],
        )
        gateway.register_payment("mp-300", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        result = await reconciler.process_payment("mp-300")

        assert result.entity_id == seeded.installment_ids[0]

    async def test_no_open_installment(self, reconciler, gateway, test_data, caplog):
        seeded = await test_data.contract(installments=2, paid=2, asset_state="rented")
        gateway.register_payment("mp-300", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        with caplog.at_level(logging.WARNING):
            result = await reconciler.process_payment("mp-300")

        assert result.outcome is ReconciliationOutcome.ENTITY_MISSING
        assert "no pending installments" in caplog.text
        assert len(await test_data.all(GatewayPayment)) == 1
        assert await test_data.all(Invoice) == []

    async def test_missing_contract(self, reconciler, gateway):
        gateway.register_payment("mp-300", external_reference="contrato:ghost",
                                 transaction_amount="120000.00")

        result = await reconciler.process_payment("mp-300")

        assert result.outcome is ReconciliationOutcome.ENTITY_MISSING
        assert result.entity_type == "Contract"

    async def test_last_installment_completes_lease_to_own(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(
            installments=2, paid=1, asset_state="rented", lease_to_own=True
        )
        gateway.register_payment("mp-300", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        result = await reconciler.process_payment("mp-300")

        assert [report.name for report in result.effects][-1] == "lease_to_own_sweep"
        contract = await test_data.get(Contract, seeded.contract_id)
        assert contract.state == "finalized_purchase"
        assert contract.transferred_at is not None
        assert (await test_data.get(Asset, seeded.asset_id)).state == "transferred"
        assert "commercial.contract.finalizePurchase" in await operations(test_data)

    async def test_plain_lease_is_not_transferred(self, reconciler, gateway, test_data):
        seeded = await test_data.contract(installments=2, paid=1, asset_state="rented")
        gateway.register_payment("mp-300", external_reference=f"contrato:{seeded.contract_id}",
                                 transaction_amount="120000.00")

        result = await reconciler.process_payment("mp-300")

        assert "lease_to_own_sweep" not in [report.name for report in result.effects]
        assert (await test_data.get(Contract, seeded.contract_id)).state == "active"


class TestConcurrentDelivery:
    """Notifications processed at the same time."""

    async def test_duplicate_first_installment_bootstraps_once(
        self, reconciler, gateway, test_data
    ):
        seeded = await test_data.contract(installments=3)
        first = seeded.installment_ids[0]
        gateway.register_payment(
            "mp-500",
            external_reference=f"cuota:{first}:contrato:{seeded.contract_id}",
            transaction_amount="120000.00",
        )

        results = await asyncio.gather(
            reconciler.process_payment("mp-500"),
            reconciler.process_payment("mp-500"),
        )

        assert sorted(r.outcome.value for r in results) == ["already_applied", "transitioned"]
        assert (await test_data.get(Asset, seeded.asset_id)).state == "rented"
        assert len(await test_data.all(AssetStateHistory)) == 1
        assert len(await test_data.all(Invoice)) == 1
        assert len(await test_data.all(GatewayPayment)) == 1

    async def test_racing_recurring_payments_pay_distinct_installments(
        self, reconciler, gateway, test_data
    ):
        seeded = await test_data.contract(installments=3)
        for payment_id in ("mp-501", "mp-502"):
            gateway.register_payment(
                payment_id,
                external_reference=f"contrato:{seeded.contract_id}",
                transaction_amount="120000.00",
            )

        results = await asyncio.gather(
            reconciler.process_payment("mp-501"),
            reconciler.process_payment("mp-502"),
        )

        assert [r.outcome for r in results] == [ReconciliationOutcome.TRANSITIONED] * 2
        assert {r.entity_id for r in results} == set(seeded.installment_ids[:2])
        states = [
            (await test_data.get(Installment, installment_id)).state
            for installment_id in seeded.installment_ids
        ]
        assert states == ["paid", "paid", "pending"]
        linked = {r.installment_id for r in await test_data.all(GatewayPayment)}
        assert linked == set(seeded.installment_ids[:2])


class TestPartsOrderFlow:
    """Payment for a spare parts order."""

    async def test_marks_paid_and_moves_stock(self, reconciler, gateway, test_data):
        seeded = await test_data.parts_order([(3, 2), (5, 5)])
        gateway.register_payment("mp-400", external_reference=f"pedido:{seeded.order_id}",
                                 transaction_amount="17500.00")

        result = await reconciler.process_payment("mp-400")

        assert result.outcome is ReconciliationOutcome.TRANSITIONED
        order = await test_data.get(PartsOrder, seeded.order_id)
        assert order.state == "paid"
        assert order.gateway_payment_id == "mp-400"

        stocks = [(await test_data.get(SparePart, part_id)).stock for part_id in seeded.part_ids]
        assert stocks == [1, 0]

        movements = await test_data.all(StockMovement)
        assert sorted(m.quantity for m in movements) == [-5, -2]
        assert {m.reference_id for m in movements} == {seeded.order_id}
        assert {m.kind for m in movements} == {"egress"}

        events = await test_data.all(BusinessEvent)
        assert [e.operation_id for e in events] == ["sale.confirm"]
        assert events[0].payload["external_payment_id"] == "mp-400"
        assert events[0].payload["total"] == "17500.00"
        # Orders are not invoiced here
        assert await test_data.all(Invoice) == []

    async def test_replay_does_not_move_stock_twice(self, reconciler, gateway, test_data):
        seeded = await test_data.parts_order([(3, 2)])
        gateway.register_payment("mp-400", external_reference=f"pedido:{seeded.order_id}",
                                 transaction_amount="5000.00")

        await reconciler.process_payment("mp-400")
        await reconciler.process_payment("mp-400")

        assert (await test_data.get(SparePart, seeded.part_ids[0])).stock == 1
        assert len(await test_data.all(StockMovement)) == 1

    async def test_insufficient_stock_keeps_order_paid(self, reconciler, gateway, test_data):
        seeded = await test_data.parts_order([(1, 2), (4, 1)])
        gateway.register_payment("mp-400", external_reference=f"pedido:{seeded.order_id}",
                                 transaction_amount="7500.00")

        result = await reconciler.process_payment("mp-400")

        assert result.outcome is ReconciliationOutcome.TRANSITIONED
        assert (await test_data.get(PartsOrder, seeded.order_id)).state == "paid"
        assert len(result.effects_failed) == 1
        assert "Insufficient stock" in result.effects_failed[0].error
        # Later effects still ran
        assert (await test_data.get(SparePart, seeded.part_ids[1])).stock == 3
        assert await operations(test_data) == ["sale.confirm"]


class TestAbortedProcessing:
    """Notifications that stop before any transition."""

    async def test_unknown_payment(self, reconciler, test_data):
        result = await reconciler.process_payment("mp-missing")

        assert result.outcome is ReconciliationOutcome.GATEWAY_NOT_FOUND
        assert await test_data.all(GatewayPayment) == []

    async def test_gateway_unavailable(self, reconciler, gateway, test_data):
        gateway.fail_with("mp-500", GatewayUnavailableError("Request timed out"))

        result = await reconciler.process_payment("mp-500")

        assert result.outcome is ReconciliationOutcome.GATEWAY_ERROR
        assert "timed out" in result.detail
        assert await test_data.all(GatewayPayment) == []

    async def test_unrecognized_reference(self, reconciler, gateway, test_data, caplog):
        gateway.register_payment("mp-600", external_reference="factura:77",
                                 transaction_amount="1000.00")

        with caplog.at_level(logging.WARNING):
            result = await reconciler.process_payment("mp-600")

        assert result.outcome is ReconciliationOutcome.UNROUTABLE
        assert "factura:77" in caplog.text
        records = await test_data.all(GatewayPayment)
        assert len(records) == 1
        assert records[0].flow_kind == "single_installment"
        assert records[0].external_reference == "factura:77"
        assert await test_data.all(BusinessEvent) == []

    async def test_rejected_payment_only_ledgered(self, reconciler, gateway, test_data):
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-700", status="rejected",
                                 external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")

        result = await reconciler.process_payment("mp-700")

        assert result.outcome is ReconciliationOutcome.LEDGERED
        assert result.status is PaymentStatus.REJECTED
        assert (await test_data.get(RentalRequest, request_id)).state == "awaiting_payment"


class TestSideEffectIsolation:
    """Downstream failures never revert the transition."""

    @pytest.fixture
    def failing_invoices(self):
        invoices = AsyncMock()
        invoices.issue_invoice.side_effect = RuntimeError("invoicing backend down")
        return invoices

    @pytest.fixture
    def isolated_reconciler(self, session_factory, gateway, emitter, failing_invoices):
        accounting = AccountingEventService(emitter)
        collaborators = Collaborators(
            invoices=failing_invoices,
            accounting=accounting,
            inventory=InventoryService(),
            lease_to_own=LeaseToOwnService(accounting),
        )
        return PaymentReconciler(session_factory, gateway, TransitionRouter.default(collaborators))

    async def test_invoice_failure_keeps_transition(
        self, isolated_reconciler, gateway, test_data, failing_invoices, caplog
    ):
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-800", external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")

        with caplog.at_level(logging.ERROR):
            result = await isolated_reconciler.process_payment("mp-800")

        assert result.outcome is ReconciliationOutcome.TRANSITIONED
        assert [(r.name, r.succeeded) for r in result.effects] == [
            ("issue_invoice", False),
            ("emit:solicitud.pay", True),
        ]
        assert "mp-800" in caplog.text
        assert (await test_data.get(RentalRequest, request_id)).state == "paid"
        assert await operations(test_data) == ["solicitud.pay"]

    async def test_failed_effect_is_not_retried_on_replay(
        self, isolated_reconciler, gateway, test_data, failing_invoices
    ):
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-800", external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")

        await isolated_reconciler.process_payment("mp-800")
        replay = await isolated_reconciler.process_payment("mp-800")

        assert replay.outcome is ReconciliationOutcome.ALREADY_APPLIED
        assert failing_invoices.issue_invoice.await_count == 1

    async def test_accounting_handler_failure_is_recorded(
        self, reconciler, gateway, emitter, test_data
    ):
        async def broken_posting(event):
            raise RuntimeError("ledger posting failed")

        emitter.on("solicitud.*", broken_posting)
        request_id = await test_data.rental_request()
        gateway.register_payment("mp-801", external_reference=f"solicitud:{request_id}",
                                 transaction_amount="150000.00")

        result = await reconciler.process_payment("mp-801")

        assert result.effects_failed == []
        events = await test_data.all(BusinessEvent)
        assert events[0].status == "failed"
        assert "ledger posting failed" in events[0].error
        assert (await test_data.get(RentalRequest, request_id)).state == "paid"


class TestSubscriptionSync:
    """Recurring-charge authorization notifications."""

    async def test_updates_status(self, reconciler, gateway, test_data):
        seeded = await test_data.contract()
        subscription_id = await test_data.subscription(seeded.contract_id, "pre-1")
        gateway.register_preapproval("pre-1", "authorized")

        result = await reconciler.process_subscription("pre-1")

        assert result.synced is True
        assert result.status == "authorized"
        subscription = await test_data.get(GatewaySubscription, subscription_id)
        assert subscription.gateway_status == "authorized"

    async def test_missing_status_stored_as_unknown(self, reconciler, gateway, test_data):
        seeded = await test_data.contract()
        await test_data.subscription(seeded.contract_id, "pre-1")
        gateway.register_preapproval("pre-1", None)

        result = await reconciler.process_subscription("pre-1")

        assert result.status == "unknown"

    async def test_unknown_subscription_skips_gateway(self, reconciler, gateway):
        gateway.get_preapproval = AsyncMock()

        result = await reconciler.process_subscription("pre-unknown")

        assert result.synced is False
        gateway.get_preapproval.assert_not_awaited()

    async def test_gateway_failure_is_swallowed(self, reconciler, gateway, test_data):
        seeded = await test_data.contract()
        subscription_id = await test_data.subscription(seeded.contract_id, "pre-1")
        gateway.fail_with("pre-1", GatewayUnavailableError("connection refused"))

        result = await reconciler.process_subscription("pre-1")

        assert result.synced is False
        subscription = await test_data.get(GatewaySubscription, subscription_id)
        assert subscription.gateway_status == "pending"
