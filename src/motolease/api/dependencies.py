"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from motolease.database import SessionFactory
from motolease.payments.reconciler import PaymentReconciler


def get_session_factory(request: Request) -> SessionFactory:
    """Session factory bound at application startup."""
    return request.app.state.session_factory


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_session_factory(request)() as session:
        try:
            yield session
        finally:
            await session.close()


def get_reconciler(request: Request) -> PaymentReconciler:
    """Payment reconciler bound at application startup."""
    return request.app.state.reconciler


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Reconciler = Annotated[PaymentReconciler, Depends(get_reconciler)]
