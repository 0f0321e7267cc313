"""External reference tokens.

Every outbound payment carries an opaque reference string that the gateway
echoes back. The token names the flow and the entity the payment belongs to:

    solicitud:<request_id>
    cuota:<installment_id>:contrato:<contract_id>
    contrato:<contract_id>
    pedido:<order_id>

``decode`` is total: anything that does not match exactly decodes to
``UnrecognizedReference`` rather than raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

REQUEST_PREFIX = "solicitud"
INSTALLMENT_PREFIX = "cuota"
CONTRACT_PREFIX = "contrato"
ORDER_PREFIX = "pedido"

SEPARATOR = ":"


class FlowKind(str, Enum):
    """Which business flow a payment belongs to."""

    FIRST_MONTH = "first_month"
    SINGLE_INSTALLMENT = "single_installment"
    RECURRING_INSTALLMENT = "recurring_installment"
    PARTS_ORDER = "parts_order"


@dataclass(frozen=True)
class RentalRequestReference:
    """First-month payment for a rental request."""

    request_id: str


@dataclass(frozen=True)
class SingleInstallmentReference:
    """Payment for one named installment of a contract."""

    installment_id: str
    contract_id: str


@dataclass(frozen=True)
class RecurringContractReference:
    """Recurring charge against a contract; the installment is chosen on arrival."""

    contract_id: str


@dataclass(frozen=True)
class PartsOrderReference:
    """Payment for a spare parts order."""

    order_id: str


@dataclass(frozen=True)
class UnrecognizedReference:
    """Token that matches no known format. Kept verbatim for auditing."""

    raw: str


DecodedReference = Union[
    RentalRequestReference,
    SingleInstallmentReference,
    RecurringContractReference,
    PartsOrderReference,
    UnrecognizedReference,
]


def decode(token: str | None) -> DecodedReference:
    """Decode a reference token. Never raises."""
    raw = (token or "").strip()
    parts = raw.split(SEPARATOR)
    if any(not part for part in parts):
        return UnrecognizedReference(raw)

    prefix = parts[0]
    if len(parts) == 2:
        if prefix == REQUEST_PREFIX:
            return RentalRequestReference(parts[1])
        if prefix == CONTRACT_PREFIX:
            return RecurringContractReference(parts[1])
        if prefix == ORDER_PREFIX:
            return PartsOrderReference(parts[1])
    elif len(parts) == 4 and prefix == INSTALLMENT_PREFIX and parts[2] == CONTRACT_PREFIX:
        return SingleInstallmentReference(installment_id=parts[1], contract_id=parts[3])

    return UnrecognizedReference(raw)


def encode(reference: DecodedReference) -> str:
    """Encode a reference into its token form. Inverse of ``decode``."""
    if isinstance(reference, RentalRequestReference):
        return SEPARATOR.join((REQUEST_PREFIX, reference.request_id))
    if isinstance(reference, SingleInstallmentReference):
        return SEPARATOR.join(
            (INSTALLMENT_PREFIX, reference.installment_id, CONTRACT_PREFIX, reference.contract_id)
        )
    if isinstance(reference, RecurringContractReference):
        return SEPARATOR.join((CONTRACT_PREFIX, reference.contract_id))
    if isinstance(reference, PartsOrderReference):
        return SEPARATOR.join((ORDER_PREFIX, reference.order_id))
    if isinstance(reference, UnrecognizedReference):
        return reference.raw
    raise TypeError(f"Unsupported reference type: {type(reference).__name__}")


def flow_kind_for(reference: DecodedReference) -> FlowKind:
    """Classify a reference into the flow recorded on the payment record.

    Unrecognized tokens fall back to ``SINGLE_INSTALLMENT``; such records
    carry no linked entity and never trigger a transition.
    """
    if isinstance(reference, RentalRequestReference):
        return FlowKind.FIRST_MONTH
    if isinstance(reference, RecurringContractReference):
        return FlowKind.RECURRING_INSTALLMENT
    if isinstance(reference, PartsOrderReference):
        return FlowKind.PARTS_ORDER
    return FlowKind.SINGLE_INSTALLMENT


def linked_entity_ids(reference: DecodedReference) -> dict[str, str]:
    """Entity id columns a payment record stores for this reference."""
    if isinstance(reference, RentalRequestReference):
        return {"rental_request_id": reference.request_id}
    if isinstance(reference, SingleInstallmentReference):
        return {
            "installment_id": reference.installment_id,
            "contract_id": reference.contract_id,
        }
    if isinstance(reference, RecurringContractReference):
        return {"contract_id": reference.contract_id}
    if isinstance(reference, PartsOrderReference):
        return {"order_id": reference.order_id}
    return {}
