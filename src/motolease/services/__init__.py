"""Domain services used by payment reconciliation."""

from motolease.services.inventory import (
    InsufficientStockError,
    InventoryService,
    MovementKind,
    MovementRequest,
    PartNotFoundError,
)
from motolease.services.invoicing import (
    InvoiceIssuer,
    InvoiceRequest,
    InvoiceService,
    IssueResult,
)
from motolease.services.lease_to_own import LeaseToOwnService
from motolease.services.state_machine import (
    AssetState,
    ContractState,
    InstallmentState,
    InvalidTransitionError,
    PartsOrderState,
    RentalRequestState,
)

__all__ = [
    # Inventory
    "InsufficientStockError",
    "InventoryService",
    "MovementKind",
    "MovementRequest",
    "PartNotFoundError",
    # Invoicing
    "InvoiceIssuer",
    "InvoiceRequest",
    "InvoiceService",
    "IssueResult",
    # Lease-to-own
    "LeaseToOwnService",
    # States
    "AssetState",
    "ContractState",
    "InstallmentState",
    "InvalidTransitionError",
    "PartsOrderState",
    "RentalRequestState",
]
