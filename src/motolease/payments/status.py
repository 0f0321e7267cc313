"""Mapping from gateway payment statuses to internal statuses."""

from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Internal payment status stored on the ledger."""

    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"
    IN_PROCESS = "in_process"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


_GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.IN_PROCESS,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
}

# Statuses that may still change on the gateway side
OPEN_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.IN_PROCESS})


def map_gateway_status(gateway_status: str | None) -> PaymentStatus:
    """Map a raw gateway status. Unknown or missing values map to PENDING."""
    return _GATEWAY_STATUS_MAP.get(gateway_status or "", PaymentStatus.PENDING)


def is_settled(status: PaymentStatus | str) -> bool:
    """True once the payment reached a final outcome on the gateway."""
    return PaymentStatus(status) not in OPEN_STATUSES


def may_overwrite(current: PaymentStatus | str, incoming: PaymentStatus | str) -> bool:
    """Whether a stored status may be replaced by a newly observed one.

    An open status never replaces a settled one, so a stale ``pending``
    arriving after ``approved`` leaves the record alone.
    """
    return not (is_settled(current) and not is_settled(incoming))
