"""In-memory gateway stub for local development and testing.

Payments are registered up front and served back verbatim. Replace with
MercadoPagoGateway in production.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from motolease.gateway.base import GatewayError, PaymentSnapshot, PreapprovalSnapshot


class StubGateway:
    """Stub gateway backed by dictionaries.

    Records how many times each payment was fetched so tests can assert on
    gateway traffic.
    """

    provider_name = "stub"

    def __init__(self) -> None:
        self._payments: dict[str, dict[str, Any]] = {}
        self._preapprovals: dict[str, dict[str, Any]] = {}
        self._failures: dict[str, GatewayError] = {}
        self.fetch_count: dict[str, int] = {}

    def register_payment(
        self,
        payment_id: str,
        *,
        status: str = "approved",
        external_reference: str = "",
        transaction_amount: Decimal | int | str = Decimal("0"),
        status_detail: str | None = "accredited",
        payment_method_id: str | None = "visa",
        payment_type_id: str | None = "credit_card",
        net_received_amount: Decimal | int | str | None = None,
        fees: list[Decimal | int | str] | None = None,
    ) -> None:
        """Register (or replace) the gateway-side state of a payment."""
        self._payments[payment_id] = {
            "id": payment_id,
            "status": status,
            "status_detail": status_detail,
            "external_reference": external_reference,
            "payment_method_id": payment_method_id,
            "payment_type_id": payment_type_id,
            "transaction_amount": str(transaction_amount),
            "transaction_details": {
                "net_received_amount": (
                    str(net_received_amount) if net_received_amount is not None else None
                ),
            },
            "fee_details": [{"amount": str(fee)} for fee in (fees or [])],
        }

    def set_status(self, payment_id: str, status: str) -> None:
        """Change the reported status of a registered payment."""
        self._payments[payment_id]["status"] = status

    def register_preapproval(self, preapproval_id: str, status: str | None) -> None:
        """Register the gateway-side state of a preapproval."""
        self._preapprovals[preapproval_id] = {"id": preapproval_id, "status": status}

    def fail_with(self, payment_id: str, error: GatewayError) -> None:
        """Make lookups for ``payment_id`` raise ``error``."""
        self._failures[payment_id] = error

    async def get_payment(self, payment_id: str) -> PaymentSnapshot | None:
        """Return the registered payment, or None if unknown."""
        self.fetch_count[payment_id] = self.fetch_count.get(payment_id, 0) + 1
        if payment_id in self._failures:
            raise self._failures[payment_id]
        payload = self._payments.get(payment_id)
        if payload is None:
            return None
        return PaymentSnapshot.from_payload(payment_id, payload)

    async def get_preapproval(self, preapproval_id: str) -> PreapprovalSnapshot | None:
        """Return the registered preapproval, or None if unknown."""
        if preapproval_id in self._failures:
            raise self._failures[preapproval_id]
        payload = self._preapprovals.get(preapproval_id)
        if payload is None:
            return None
        return PreapprovalSnapshot(preapproval_id=preapproval_id, status=payload["status"])

    async def aclose(self) -> None:
        """Nothing to release."""
