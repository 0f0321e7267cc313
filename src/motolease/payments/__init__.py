"""Payment reconciliation: references, ledger, transitions and effects."""

from motolease.payments.effects import EffectReport, PostCommitEffect, SideEffectOrchestrator
from motolease.payments.handlers import (
    AlreadyAppliedError,
    Collaborators,
    EntityNotFoundError,
    TransitionContext,
    TransitionOutcome,
)
from motolease.payments.ledger import LedgerResult, PaymentLedger
from motolease.payments.reconciler import (
    PaymentReconciler,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionSyncResult,
)
from motolease.payments.references import (
    DecodedReference,
    FlowKind,
    PartsOrderReference,
    RecurringContractReference,
    RentalRequestReference,
    SingleInstallmentReference,
    UnrecognizedReference,
    decode,
    encode,
)
from motolease.payments.router import TransitionRouter
from motolease.payments.status import PaymentStatus, map_gateway_status

__all__ = [
    # References
    "DecodedReference",
    "FlowKind",
    "PartsOrderReference",
    "RecurringContractReference",
    "RentalRequestReference",
    "SingleInstallmentReference",
    "UnrecognizedReference",
    "decode",
    "encode",
    # Status
    "PaymentStatus",
    "map_gateway_status",
    # Ledger
    "LedgerResult",
    "PaymentLedger",
    # Transitions
    "AlreadyAppliedError",
    "Collaborators",
    "EntityNotFoundError",
    "TransitionContext",
    "TransitionOutcome",
    "TransitionRouter",
    # Effects
    "EffectReport",
    "PostCommitEffect",
    "SideEffectOrchestrator",
    # Orchestration
    "PaymentReconciler",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SubscriptionSyncResult",
]
