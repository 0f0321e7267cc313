"""Payment gateway webhook endpoint.

The gateway only tells us that something changed; the notification body
carries a type and a resource id. Payment notifications are re-fetched from
the gateway and reconciled, subscription notifications refresh the stored
authorization status.

Always answers 200: a non-2xx makes the gateway redeliver aggressively,
which only adds load while an internal dependency is failing. Redelivery of
a notification that did fail is harmless because processing is idempotent.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request, status
from pydantic import BaseModel

from motolease.api.dependencies import Reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

PAYMENT_TYPES = frozenset({"payment", "subscription_authorized_payment"})
SUBSCRIPTION_TYPE = "subscription_preapproval"


class GatewayNotification(BaseModel):
    """Webhook payload.

    Current format:
        {"type": "payment", "action": "payment.updated", "data": {"id": "123"}}

    Legacy topic format:
        {"topic": "payment", "resource": "/v1/payments/123"}
    """

    type: str | None = None
    action: str | None = None
    data: dict[str, Any] | None = None
    id: str | int | None = None
    live_mode: bool | None = None

    topic: str | None = None
    resource: str | None = None

    @property
    def notification_type(self) -> str | None:
        return self.type or self.topic

    @property
    def resource_id(self) -> str | None:
        """Id of the payment or preapproval the notification is about."""
        if self.data and self.data.get("id") not in (None, ""):
            return str(self.data["id"])
        if self.resource:
            return self.resource.rstrip("/").split("/")[-1] or None
        return None


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    received: bool = True
    error: str | None = None


@router.post(
    "/payment-gateway",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
)
async def receive_notification(request: Request, reconciler: Reconciler) -> WebhookAck:
    """Receive a gateway notification."""
    raw_body = await request.body()
    if not raw_body.strip():
        logger.info("Empty gateway notification; nothing to do")
        return WebhookAck()

    try:
        notification = GatewayNotification.model_validate_json(raw_body)
        notification_type = notification.notification_type
        resource_id = notification.resource_id
        logger.info(
            "Gateway notification type=%s action=%s id=%s",
            notification_type,
            notification.action,
            resource_id,
        )

        if resource_id is None:
            logger.info("Notification without resource id; ignoring")
        elif notification_type in PAYMENT_TYPES:
            result = await reconciler.process_payment(resource_id)
            logger.info("Payment %s reconciled: %s", resource_id, result.outcome.value)
        elif notification_type == SUBSCRIPTION_TYPE:
            await reconciler.process_subscription(resource_id)
        else:
            logger.info("Unhandled notification type %s; ignoring", notification_type)
    except Exception:
        logger.exception("Failed to process gateway notification")
        return WebhookAck(error="Internal error")

    return WebhookAck()


@router.get("/payment-gateway", status_code=status.HTTP_200_OK)
async def validate_endpoint() -> dict[str, str]:
    """Endpoint validation ping from the gateway."""
    return {"status": "ok"}
