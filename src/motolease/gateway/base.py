"""Base protocol and types for payment gateway adapters.

All gateway adapters must implement the PaymentGateway protocol. Adapters
know nothing about leasing entities; they only report what the gateway says
about a payment or a recurring-charge authorization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol


class GatewayError(Exception):
    """Base exception for gateway errors.

    Attributes:
        error_code: Machine-readable error code
        error_message: Human-readable error description
    """

    def __init__(self, error_code: str, error_message: str):
        self.error_code = error_code
        self.error_message = error_message
        super().__init__(f"{error_code}: {error_message}")


class GatewayAuthError(GatewayError):
    """Authentication error (invalid access token)."""

    def __init__(self, message: str = "Invalid access token"):
        super().__init__("AUTH_ERROR", message)


class GatewayUnavailableError(GatewayError):
    """Gateway unreachable or timed out."""

    def __init__(self, message: str):
        super().__init__("UNAVAILABLE", message)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


@dataclass(frozen=True)
class PaymentSnapshot:
    """Authoritative state of one payment as reported by the gateway."""

    payment_id: str
    status: str
    status_detail: str | None = None
    external_reference: str = ""
    payment_method_id: str | None = None
    payment_type_id: str | None = None
    transaction_amount: Decimal = Decimal("0")
    net_received_amount: Decimal | None = None
    fee_amounts: tuple[Decimal, ...] = ()
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def fee_total(self) -> Decimal | None:
        """Sum of all fee components, or None when the gateway sent none."""
        if not self.fee_amounts:
            return None
        return sum(self.fee_amounts, Decimal("0"))

    @classmethod
    def from_payload(cls, payment_id: str, payload: dict[str, Any]) -> PaymentSnapshot:
        """Build a snapshot from a gateway ``/v1/payments/{id}`` response body."""
        details = payload.get("transaction_details") or {}
        fees = payload.get("fee_details") or []
        return cls(
            payment_id=str(payload.get("id") or payment_id),
            status=payload.get("status") or "",
            status_detail=payload.get("status_detail"),
            external_reference=payload.get("external_reference") or "",
            payment_method_id=payload.get("payment_method_id"),
            payment_type_id=payload.get("payment_type_id"),
            transaction_amount=_to_decimal(payload.get("transaction_amount")) or Decimal("0"),
            net_received_amount=_to_decimal(details.get("net_received_amount")),
            fee_amounts=tuple(
                amount
                for amount in (_to_decimal(fee.get("amount")) for fee in fees if isinstance(fee, dict))
                if amount is not None
            ),
            raw_payload=payload,
        )


@dataclass(frozen=True)
class PreapprovalSnapshot:
    """State of a recurring-charge authorization."""

    preapproval_id: str
    status: str | None
    external_reference: str | None = None


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    No retries happen at this layer; the gateway's own webhook redelivery
    absorbs retry pressure.
    """

    provider_name: str

    async def get_payment(self, payment_id: str) -> PaymentSnapshot | None:
        """Fetch the authoritative state of a payment.

        Returns:
            PaymentSnapshot, or None if the gateway cannot locate the payment.

        Raises:
            GatewayError: on authentication failure, timeout or transport error.
        """
        ...

    async def get_preapproval(self, preapproval_id: str) -> PreapprovalSnapshot | None:
        """Fetch a recurring-charge authorization, or None if unknown."""
        ...

    async def aclose(self) -> None:
        """Release any transport resources."""
        ...
