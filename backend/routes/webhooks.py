"""Webhook Routes - Stripe checkout notifications.

Stripe webhook endpoint with:
- Signature verification
- Idempotency (stripe_events ledger + one provisioning job per checkout)
- Fast acknowledgement: the job is enqueued, never run inline

POST /api/webhook/stripe - Main Stripe webhook endpoint
POST /api/webhooks/stripe - Alias for Stripe webhook (for backward compatibility)
"""
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
import logging

from services.container import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, services: Services, stripe_signature: str = None):
    """
    Core Stripe webhook handler.

    Handled Events:
    - checkout.session.completed (primary provisioning trigger)
    - checkout.session.async_payment_succeeded
    Every other event type is acknowledged and ignored.
    """
    payload = await request.body()
    try:
        success, message, details = await services.webhooks.process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )
    except Exception as e:
        # Nothing was enqueued; let Stripe redeliver (submission is idempotent)
        logger.exception(f"Stripe webhook error: {e}")
        return JSONResponse(status_code=500, content={"status": "error", "message": "Webhook processing failed"})

    if success:
        return {"status": "received", "message": message, "details": details}

    logger.error(f"Webhook rejected: {message}")
    return JSONResponse(status_code=400, content={"status": "error", "message": message})


# Primary webhook endpoint
@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, services, stripe_signature)


# Alias endpoint (Stripe may be configured with this URL)
@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, services, stripe_signature)
