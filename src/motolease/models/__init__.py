"""SQLAlchemy ORM models."""

from motolease.models.base import Base, IdMixin, TimestampMixin, new_id
from motolease.models.events import BusinessEvent
from motolease.models.leasing import (
    Asset,
    AssetStateHistory,
    Contract,
    Installment,
    RentalRequest,
)
from motolease.models.parts import PartsOrder, PartsOrderItem, SparePart, StockMovement
from motolease.models.payments import GatewayPayment, GatewaySubscription, Invoice

__all__ = [
    "Base",
    "IdMixin",
    "TimestampMixin",
    "new_id",
    # Leasing
    "Asset",
    "AssetStateHistory",
    "Contract",
    "Installment",
    "RentalRequest",
    # Parts
    "PartsOrder",
    "PartsOrderItem",
    "SparePart",
    "StockMovement",
    # Payments
    "GatewayPayment",
    "GatewaySubscription",
    "Invoice",
    # Events
    "BusinessEvent",
]
