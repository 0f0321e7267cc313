"""Entity state machines with transition validation."""

from __future__ import annotations

from enum import Enum


class RentalRequestState(str, Enum):
    """Rental request states."""

    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    APPROVED = "approved"
    WAITLISTED = "waitlisted"
    ASSIGNED = "assigned"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class InstallmentState(str, Enum):
    """Installment states. ``overdue`` is set by a time-driven job."""

    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"


class ContractState(str, Enum):
    """Contract states."""

    PENDING = "pending"
    ACTIVE = "active"
    FINALIZED = "finalized"
    FINALIZED_PURCHASE = "finalized_purchase"
    CANCELLED = "cancelled"


class AssetState(str, Enum):
    """Asset (motorcycle) states."""

    AVAILABLE = "available"
    RESERVED = "reserved"
    RENTED = "rented"
    IN_SERVICE = "in_service"
    TRANSFERRED = "transferred"
    DECOMMISSIONED = "decommissioned"


class PartsOrderState(str, Enum):
    """Parts order states."""

    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Installments a payment can still satisfy
OPEN_INSTALLMENT_STATES = (InstallmentState.PENDING.value, InstallmentState.OVERDUE.value)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, reason: str | None = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        msg = f"Invalid transition from '{from_state}' to '{to_state}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class StateMachine:
    """Table-driven state machine.

    Subclasses define ``VALID_TRANSITIONS`` as ``{from_state: [to_states]}``.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {}

    @classmethod
    def can_transition(cls, from_state: str, to_state: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_state, [])
        return to_state in allowed

    @classmethod
    def validate_transition(cls, from_state: str, to_state: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_state, to_state):
            raise InvalidTransitionError(from_state, to_state)

    @classmethod
    def sources_for(cls, to_state: str) -> list[str]:
        """States from which ``to_state`` can be reached."""
        return [src for src, targets in cls.VALID_TRANSITIONS.items() if to_state in targets]

    @classmethod
    def get_next_states(cls, current_state: str) -> list[str]:
        """Get list of valid next states from current state."""
        return cls.VALID_TRANSITIONS.get(current_state, [])


class RentalRequestStateMachine(StateMachine):
    """Rental request lifecycle.

    Only ``awaiting_payment -> paid`` and ``approved -> delivered`` are driven
    by payment reconciliation; the rest belong to the approval workflow.
    """

    VALID_TRANSITIONS = {
        RentalRequestState.CREATED: [
            RentalRequestState.AWAITING_PAYMENT,
            RentalRequestState.CANCELLED,
        ],
        RentalRequestState.AWAITING_PAYMENT: [
            RentalRequestState.PAID,
            RentalRequestState.REJECTED,
            RentalRequestState.CANCELLED,
        ],
        RentalRequestState.PAID: [RentalRequestState.APPROVED, RentalRequestState.REJECTED],
        RentalRequestState.APPROVED: [
            RentalRequestState.WAITLISTED,
            RentalRequestState.ASSIGNED,
            RentalRequestState.DELIVERED,
            RentalRequestState.REJECTED,
        ],
        RentalRequestState.WAITLISTED: [
            RentalRequestState.ASSIGNED,
            RentalRequestState.REJECTED,
        ],
        RentalRequestState.ASSIGNED: [RentalRequestState.DELIVERED],
        RentalRequestState.DELIVERED: [],
        RentalRequestState.REJECTED: [],
        RentalRequestState.CANCELLED: [],
    }


class InstallmentStateMachine(StateMachine):
    """Installment lifecycle. ``paid`` is terminal."""

    VALID_TRANSITIONS = {
        InstallmentState.PENDING: [InstallmentState.OVERDUE, InstallmentState.PAID],
        InstallmentState.OVERDUE: [InstallmentState.PAID],
        InstallmentState.PAID: [],
    }


class AssetStateMachine(StateMachine):
    """Asset lifecycle."""

    VALID_TRANSITIONS = {
        AssetState.AVAILABLE: [
            AssetState.RESERVED,
            AssetState.IN_SERVICE,
            AssetState.DECOMMISSIONED,
        ],
        AssetState.RESERVED: [AssetState.RENTED, AssetState.AVAILABLE],
        AssetState.RENTED: [
            AssetState.AVAILABLE,
            AssetState.IN_SERVICE,
            AssetState.TRANSFERRED,
        ],
        AssetState.IN_SERVICE: [AssetState.AVAILABLE, AssetState.RENTED],
        AssetState.TRANSFERRED: [],
        AssetState.DECOMMISSIONED: [],
    }


class PartsOrderStateMachine(StateMachine):
    """Parts order lifecycle."""

    VALID_TRANSITIONS = {
        PartsOrderState.PENDING_PAYMENT: [PartsOrderState.PAID, PartsOrderState.CANCELLED],
        PartsOrderState.PAID: [PartsOrderState.DELIVERED],
        PartsOrderState.DELIVERED: [],
        PartsOrderState.CANCELLED: [],
    }
