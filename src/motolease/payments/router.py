"""Routes approved payments to the transition handler for their flow."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from motolease.payments.handlers import (
    Collaborators,
    PartsOrderHandler,
    RecurringContractHandler,
    RentalRequestHandler,
    SingleInstallmentHandler,
    TransitionContext,
    TransitionHandler,
    TransitionOutcome,
)
from motolease.payments.references import (
    DecodedReference,
    PartsOrderReference,
    RecurringContractReference,
    RentalRequestReference,
    SingleInstallmentReference,
    UnrecognizedReference,
)
from motolease.payments.status import PaymentStatus

logger = logging.getLogger(__name__)


class TransitionRouter:
    """Dispatches on the decoded reference variant.

    Only approved payments transition anything. The router runs for every
    approved notification, not just the first; handler guards make repeats
    harmless and let redelivery finish a transition interrupted by a crash.
    """

    def __init__(self, handlers: Mapping[type, TransitionHandler]):
        self.handlers = dict(handlers)

    @classmethod
    def default(cls, collaborators: Collaborators) -> TransitionRouter:
        return cls(
            {
                RentalRequestReference: RentalRequestHandler(collaborators),
                SingleInstallmentReference: SingleInstallmentHandler(collaborators),
                RecurringContractReference: RecurringContractHandler(collaborators),
                PartsOrderReference: PartsOrderHandler(collaborators),
            }
        )

    def handler_for(self, reference: DecodedReference) -> TransitionHandler | None:
        return self.handlers.get(type(reference))

    async def route(
        self,
        session: AsyncSession,
        status: PaymentStatus,
        reference: DecodedReference,
        context: TransitionContext,
    ) -> TransitionOutcome | None:
        """Apply the transition for an approved payment.

        Returns:
            The handler outcome, or None when nothing should transition
            (payment not approved, or the reference names no known flow).

        Raises:
            EntityNotFoundError: If the referenced entity does not exist
            AlreadyAppliedError: If a concurrent delivery won the race
        """
        if status is not PaymentStatus.APPROVED:
            logger.debug(
                "Payment %s is %s; no transition", context.snapshot.payment_id, status.value
            )
            return None

        handler = self.handler_for(reference)
        if handler is None:
            raw = reference.raw if isinstance(reference, UnrecognizedReference) else reference
            logger.warning(
                "Approved payment %s has unroutable reference %r",
                context.snapshot.payment_id,
                raw,
            )
            return None

        return await handler.apply(session, reference, context)
