"""Payment gateway adapters."""

from motolease.config import Settings
from motolease.gateway.base import (
    GatewayAuthError,
    GatewayError,
    GatewayUnavailableError,
    PaymentGateway,
    PaymentSnapshot,
    PreapprovalSnapshot,
)
from motolease.gateway.mercadopago import MercadoPagoGateway
from motolease.gateway.stub import StubGateway

__all__ = [
    "GatewayAuthError",
    "GatewayError",
    "GatewayUnavailableError",
    "PaymentGateway",
    "PaymentSnapshot",
    "PreapprovalSnapshot",
    "MercadoPagoGateway",
    "StubGateway",
    "build_gateway",
]


def build_gateway(settings: Settings) -> PaymentGateway:
    """Build the gateway adapter selected by ``GATEWAY_PROVIDER``."""
    if settings.gateway_provider == "stub":
        return StubGateway()
    if settings.gateway_provider == "mercadopago":
        return MercadoPagoGateway(settings)
    raise ValueError(f"Unknown gateway provider: {settings.gateway_provider}")
