"""Liveness, readiness and dependency health of the payments service."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from motolease import __version__
from motolease.api.dependencies import DbSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Service status with the state of its dependencies."""

    status: str
    version: str
    timestamp: datetime
    database: str
    gateway_provider: str | None = None


async def _probe_database(db: DbSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Database health probe failed", exc_info=True)
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: DbSession) -> HealthResponse:
    """Report database reachability and the configured payment gateway.

    A failed database probe degrades the service but still answers 200, so
    the probe itself never takes webhook ingress out of rotation.
    """
    database_ok = await _probe_database(db)
    gateway = getattr(request.app.state, "gateway", None)

    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        database="healthy" if database_ok else "unhealthy",
        gateway_provider=getattr(gateway, "provider_name", None),
    )


@router.get("/ready")
async def readiness_check(request: Request, response: Response) -> dict[str, str]:
    """Ready once the reconciler is wired to a gateway and the database."""
    if getattr(request.app.state, "reconciler", None) is None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "starting"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
