"""Business event types.

Operation ids follow the ``domain.entity.action`` pattern and are the keys
downstream handlers (accounting postings, notifications) subscribe to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Operation(str, Enum):
    """Operations emitted by payment reconciliation."""

    RENTAL_REQUEST_PAY = "solicitud.pay"
    PAYMENT_APPROVE = "commercial.payment.approve"
    CONTRACT_FINALIZE_PURCHASE = "commercial.contract.finalizePurchase"
    ASSET_CHANGE_STATE = "fleet.moto.changeState"
    SALE_CONFIRM = "sale.confirm"


class EntityType(str, Enum):
    """Entity type names recorded on business events."""

    RENTAL_REQUEST = "RentalRequest"
    CONTRACT = "Contract"
    INSTALLMENT = "Installment"
    ASSET = "Asset"
    PARTS_ORDER = "PartsOrder"


@dataclass(frozen=True)
class BusinessEventData:
    """An emitted business operation, as delivered to handlers."""

    event_id: str
    operation_id: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    actor: str | None = None
    timestamp: datetime | None = None
