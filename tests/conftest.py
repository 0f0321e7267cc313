"""Pytest fixtures for leasing payment tests."""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from motolease.config import Settings
from motolease.database import SessionFactory, make_session_factory, session_scope
from motolease.events.emitter import AsyncEventEmitter
from motolease.gateway.stub import StubGateway
from motolease.models import (
    Asset,
    Base,
    Contract,
    GatewaySubscription,
    Installment,
    PartsOrder,
    PartsOrderItem,
    RentalRequest,
    SparePart,
    new_id,
)
from motolease.payments.reconciler import PaymentReconciler

CLIENT_ID = "client-001"


@pytest.fixture
async def engine(tmp_path):
    """Create a file-backed SQLite engine per test.

    File-backed so every session gets its own connection and commits are
    real, like separate transactions on the production database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'motolease.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'motolease.db'}",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        gateway_provider="stub",
        mercado_pago_access_token="",
        mercado_pago_base_url="https://api.mercadopago.com",
        mercado_pago_timeout=2.0,
        system_actor="system",
    )


@pytest.fixture
def session_factory(engine) -> SessionFactory:
    return make_session_factory(engine)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A session for tests that drive one service directly."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def emitter() -> AsyncEventEmitter:
    return AsyncEventEmitter()


@pytest.fixture
def reconciler(session_factory, gateway, emitter) -> PaymentReconciler:
    return PaymentReconciler.build(session_factory, gateway, emitter=emitter)


@pytest.fixture
def test_data(session_factory) -> LeasingTestData:
    return LeasingTestData(session_factory)


@dataclass
class SeededContract:
    """Ids of a seeded contract and everything around it."""

    contract_id: str
    asset_id: str
    rental_request_id: str
    installment_ids: list[str] = field(default_factory=list)


@dataclass
class SeededOrder:
    """Ids of a seeded parts order."""

    order_id: str
    number: int
    part_ids: list[str] = field(default_factory=list)


class LeasingTestData:
    """Seeds and reads entities, each call in its own committed transaction."""

    _order_numbers = itertools.count(1001)

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def add(self, *objects: Any) -> None:
        async with session_scope(self.session_factory) as session:
            session.add_all(objects)

    async def get(self, model: Any, entity_id: str) -> Any:
        async with self.session_factory() as session:
            return await session.get(model, entity_id)

    async def all(self, model: Any, *criteria: Any) -> list[Any]:
        async with self.session_factory() as session:
            result = await session.execute(select(model).where(*criteria))
            return list(result.scalars())

    async def rental_request(
        self,
        state: str = "awaiting_payment",
        first_month_amount: Decimal = Decimal("150000.00"),
    ) -> str:
        request_id = new_id()
        await self.add(
            RentalRequest(
                id=request_id,
                client_id=CLIENT_ID,
                state=state,
                plan="monthly",
                desired_model="Honda CG 150",
                first_month_amount=first_month_amount,
            )
        )
        return request_id

    async def contract(
        self,
        *,
        installments: int = 3,
        installment_amount: Decimal = Decimal("120000.00"),
        paid: int = 0,
        overdue: tuple[int, ...] = (),
        asset_state: str = "reserved",
        request_state: str = "approved",
        lease_to_own: bool = False,
        due_dates: list[date] | None = None,
    ) -> SeededContract:
        """Seed asset, rental request, contract and its installment schedule.

        Args:
            installments: Number of installments (sequence 1..n)
            paid: How many of the first installments are already paid
            overdue: Sequence numbers to mark overdue
            due_dates: Explicit due dates (defaults to the 10th of each month)
        """
        asset_id, request_id, contract_id = new_id(), new_id(), new_id()
        objects: list[Any] = [
            Asset(id=asset_id, brand="Honda", model="CG 150", plate="A123BCD", state=asset_state),
            RentalRequest(
                id=request_id,
                client_id=CLIENT_ID,
                state=request_state,
                plan="monthly",
                first_month_amount=Decimal("150000.00"),
            ),
            Contract(
                id=contract_id,
                client_id=CLIENT_ID,
                asset_id=asset_id,
                rental_request_id=request_id,
                state="active",
                is_lease_to_own=lease_to_own,
            ),
        ]

        seeded = SeededContract(contract_id, asset_id, request_id)
        for seq in range(1, installments + 1):
            installment_id = new_id()
            seeded.installment_ids.append(installment_id)
            state = "pending"
            if seq <= paid:
                state = "paid"
            elif seq in overdue:
                state = "overdue"
            objects.append(
                Installment(
                    id=installment_id,
                    contract_id=contract_id,
                    sequence_number=seq,
                    due_date=due_dates[seq - 1] if due_dates else date(2026, seq, 10),
                    amount=installment_amount,
                    state=state,
                )
            )

        await self.add(*objects)
        return seeded

    async def parts_order(
        self,
        lines: list[tuple[int, int]],
        *,
        state: str = "pending_payment",
        unit_price: Decimal = Decimal("2500.00"),
    ) -> SeededOrder:
        """Seed one spare part per line and an order over them.

        Args:
            lines: ``(stock, quantity)`` per order line
        """
        order_id = new_id()
        number = next(self._order_numbers)
        seeded = SeededOrder(order_id, number)
        objects: list[Any] = [
            PartsOrder(
                id=order_id,
                number=number,
                client_id=CLIENT_ID,
                state=state,
                total=sum((unit_price * qty for _, qty in lines), Decimal("0")),
            )
        ]
        for index, (stock, quantity) in enumerate(lines):
            part_id = new_id()
            seeded.part_ids.append(part_id)
            objects.append(
                SparePart(
                    id=part_id,
                    code=f"P-{number}-{index}",
                    name=f"Part {index}",
                    stock=stock,
                    minimum_stock=1,
                    purchase_price=Decimal("1500.00"),
                )
            )
            objects.append(
                PartsOrderItem(
                    id=new_id(),
                    order_id=order_id,
                    part_id=part_id,
                    quantity=quantity,
                    unit_price=unit_price,
                )
            )

        await self.add(*objects)
        return seeded

    async def subscription(self, contract_id: str, preapproval_id: str) -> str:
        subscription_id = new_id()
        await self.add(
            GatewaySubscription(
                id=subscription_id,
                preapproval_id=preapproval_id,
                contract_id=contract_id,
                gateway_status="pending",
            )
        )
        return subscription_id
