"""
Mercado Pago gateway adapter

Async client for querying payments and preapprovals using Bearer Token auth.

Connection Details:
    - Base URL: https://api.mercadopago.com
    - Auth: Bearer Token (Access Token)

Endpoints:
    - GET /v1/payments/{id} - Get payment details
    - GET /preapproval/{id} - Get subscription (preapproval) details
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from motolease.config import Settings, get_settings
from motolease.gateway.base import (
    GatewayAuthError,
    GatewayError,
    GatewayUnavailableError,
    PaymentSnapshot,
    PreapprovalSnapshot,
)

logger = logging.getLogger(__name__)


class MercadoPagoGateway:
    """
    Async HTTP adapter for the Mercado Pago API.

    Every request is bounded by the configured timeout. A timeout or
    connection failure raises GatewayUnavailableError so the caller can abort
    the notification and rely on redelivery.

    Example:
        gateway = MercadoPagoGateway()
        snapshot = await gateway.get_payment("123456789")
        await gateway.aclose()
    """

    provider_name = "mercadopago"

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = settings or get_settings()
        self._access_token = settings.mercado_pago_access_token
        if not self._access_token:
            logger.error("MERCADO_PAGO_ACCESS_TOKEN not configured")

        self._client = client or httpx.AsyncClient(
            base_url=settings.mercado_pago_base_url,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            timeout=settings.mercado_pago_timeout,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _get(self, path: str) -> dict[str, Any] | None:
        try:
            response = await self._client.get(path)
        except httpx.TimeoutException as e:
            logger.error("Gateway timeout on %s: %s", path, e)
            raise GatewayUnavailableError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            logger.error("Gateway connection error on %s: %s", path, e)
            raise GatewayUnavailableError(f"Could not connect to gateway: {e}") from e

        if response.status_code == 401:
            raise GatewayAuthError("Invalid or expired access token")

        if response.status_code == 404:
            return None

        if response.status_code >= 500:
            raise GatewayUnavailableError(
                f"Gateway returned {response.status_code} for {path}"
            )

        if response.status_code >= 400:
            raise GatewayError("HTTP_ERROR", f"Gateway returned {response.status_code} for {path}")

        return response.json()

    async def get_payment(self, payment_id: str) -> PaymentSnapshot | None:
        """
        Get payment details by ID.

        Used to read the authoritative payment state after a webhook
        notification; the notification body itself is never trusted.

        Args:
            payment_id: Gateway payment ID

        Returns:
            PaymentSnapshot, or None if the gateway does not know the payment.

        Raises:
            GatewayAuthError: Invalid access token
            GatewayUnavailableError: Timeout or network failure
        """
        logger.info("Fetching gateway payment %s", payment_id)
        data = await self._get(f"/v1/payments/{payment_id}")
        if data is None:
            logger.warning("Gateway payment %s not found", payment_id)
            return None

        snapshot = PaymentSnapshot.from_payload(payment_id, data)
        logger.info(
            "Gateway payment %s status=%s (%s)",
            payment_id,
            snapshot.status,
            snapshot.status_detail,
        )
        return snapshot

    async def get_preapproval(self, preapproval_id: str) -> PreapprovalSnapshot | None:
        """Get a subscription (preapproval) by ID."""
        data = await self._get(f"/preapproval/{preapproval_id}")
        if data is None:
            return None
        return PreapprovalSnapshot(
            preapproval_id=str(data.get("id") or preapproval_id),
            status=data.get("status"),
            external_reference=data.get("external_reference"),
        )
