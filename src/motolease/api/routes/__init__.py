"""API routes."""

from motolease.api.routes.health import router as health_router
from motolease.api.routes.webhooks import router as webhooks_router

__all__ = ["health_router", "webhooks_router"]
