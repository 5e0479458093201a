"""Stripe webhook endpoint."""

from fastapi import APIRouter, Depends, Request

from billing_recon.api.dependencies import get_webhook_service
from billing_recon.schemas.billing import WebhookAck
from billing_recon.services.webhook_service import WebhookService

router = APIRouter()


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """Verify and apply a Stripe event.

    400 on a bad signature, 503 when the endpoint is unconfigured or the
    processor is unavailable (Stripe redelivers), 200 otherwise.
    """
    body = await request.body()
    outcome = await service.handle_event(body, request.headers.get("stripe-signature"))
    return WebhookAck(status=outcome.status.value)
