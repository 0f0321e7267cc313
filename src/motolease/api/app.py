"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from motolease import __version__
from motolease.api.routes import health_router, webhooks_router
from motolease.config import Settings, get_settings
from motolease.database import SessionFactory, dispose_db, init_db
from motolease.gateway import PaymentGateway, build_gateway
from motolease.payments.reconciler import PaymentReconciler

logger = logging.getLogger(__name__)


def _bind_reconciler(app: FastAPI) -> None:
    app.state.reconciler = PaymentReconciler.build(
        app.state.session_factory,
        app.state.gateway,
        actor=app.state.settings.system_actor,
    )


def create_app(
    settings: Settings | None = None,
    gateway: PaymentGateway | None = None,
    session_factory: SessionFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``gateway`` and ``session_factory`` may be injected (tests, embedding);
    whatever is not injected is built from settings at startup and released
    at shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        owns_db = app.state.session_factory is None
        owns_gateway = app.state.gateway is None
        # Startup
        if owns_db:
            _, app.state.session_factory = init_db()
        if owns_gateway:
            app.state.gateway = build_gateway(settings)
        _bind_reconciler(app)
        logger.info("Payment gateway provider: %s", app.state.gateway.provider_name)
        yield
        # Shutdown
        if owns_gateway:
            await app.state.gateway.aclose()
        if owns_db:
            await dispose_db()

    app = FastAPI(
        title="Motolease Payments API",
        description="Payment gateway reconciliation for motorcycle leasing",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.session_factory = session_factory
    if gateway is not None and session_factory is not None:
        _bind_reconciler(app)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(webhooks_router)

    return app
