"""Lease-to-own completion sweep.

Scans every active lease-to-own contract that has not been transferred yet
and, for those with all installments paid, converts the lease into
ownership: the contract is finalized as a purchase and the asset is marked
transferred. The sweep is global on purpose so contracts that became
eligible through other paths are caught as well.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from motolease.events.accounting import AccountingEventService
from motolease.events.types import EntityType, Operation
from motolease.models import Asset, AssetStateHistory, Contract, Installment
from motolease.services.state_machine import (
    OPEN_INSTALLMENT_STATES,
    AssetState,
    AssetStateMachine,
    ContractState,
)

logger = logging.getLogger(__name__)


class LeaseToOwnService:
    """Converts fully paid lease-to-own contracts into ownership."""

    def __init__(self, accounting: AccountingEventService):
        self.accounting = accounting

    async def eligible_contract_ids(self, session: AsyncSession) -> list[str]:
        """Active, untransferred lease-to-own contracts with nothing left to pay."""
        has_installments = exists().where(Installment.contract_id == Contract.id)
        has_open = exists().where(
            Installment.contract_id == Contract.id,
            Installment.state.in_(OPEN_INSTALLMENT_STATES),
        )
        result = await session.execute(
            select(Contract.id)
            .where(
                Contract.is_lease_to_own.is_(True),
                Contract.state == ContractState.ACTIVE.value,
                Contract.transferred_at.is_(None),
                has_installments,
                ~has_open,
            )
            .order_by(Contract.created_at, Contract.id)
        )
        return list(result.scalars())

    async def sweep(self, session: AsyncSession, actor: str = "system") -> list[str]:
        """Run the completion check over all lease-to-own contracts.

        Each contract is claimed with a conditional update on
        ``transferred_at IS NULL``, so overlapping sweeps transfer it once.
        Contracts are completed under their own savepoint: one that fails is
        logged and rolled back without undoing the others.

        Returns:
            Ids of the contracts transferred by this call.
        """
        transferred: list[str] = []
        now = datetime.now(timezone.utc)

        for contract_id in await self.eligible_contract_ids(session):
            try:
                async with session.begin_nested():
                    done = await self._complete(session, contract_id, now, actor)
            except Exception:
                logger.exception(
                    "Lease-to-own completion failed for contract %s; left for the next sweep",
                    contract_id,
                )
                continue
            if done:
                transferred.append(contract_id)
                logger.info("Lease-to-own completed for contract %s", contract_id)

        return transferred

    async def _complete(
        self, session: AsyncSession, contract_id: str, now: datetime, actor: str
    ) -> bool:
        """Claim one contract and transfer its asset. False if already claimed."""
        claimed = await session.execute(
            update(Contract)
            .where(
                Contract.id == contract_id,
                Contract.state == ContractState.ACTIVE.value,
                Contract.transferred_at.is_(None),
            )
            .values(
                state=ContractState.FINALIZED_PURCHASE.value,
                finished_at=now,
                transferred_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return False

        contract = (
            await session.execute(
                select(Contract).where(Contract.id == contract_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        await self._transfer_asset(session, contract, actor)
        await self.accounting.emit(
            session,
            Operation.CONTRACT_FINALIZE_PURCHASE,
            EntityType.CONTRACT,
            contract.id,
            {
                "kind": "lease-to-own-automatic",
                "asset_id": contract.asset_id,
                "client_id": contract.client_id,
            },
            actor,
        )
        return True

    async def _transfer_asset(self, session: AsyncSession, contract: Contract, actor: str) -> None:
        asset = (
            await session.execute(
                select(Asset).where(Asset.id == contract.asset_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        previous = asset.state
        if not AssetStateMachine.can_transition(previous, AssetState.TRANSFERRED):
            logger.warning(
                "Contract %s finalized but asset %s is %s; asset left unchanged",
                contract.id,
                asset.id,
                previous,
            )
            return

        result = await session.execute(
            update(Asset)
            .where(Asset.id == asset.id, Asset.state == previous)
            .values(state=AssetState.TRANSFERRED.value, previous_state=previous)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return

        session.add(
            AssetStateHistory(
                asset_id=asset.id,
                previous_state=previous,
                new_state=AssetState.TRANSFERRED.value,
                reason=f"Lease-to-own completed, contract {contract.id}; "
                f"transferred to client {contract.client_id}",
                actor=actor,
            )
        )
        await session.flush()
