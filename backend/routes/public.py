"""
Public API Routes
Snapshot catalog (published plans only) and Stripe checkout for a plan.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional
import logging

from errors import AdapterError, AdapterTransient, PlanNotFound
from models import Plan, PlanStatus
from services.container import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["public"])


# ============================================
# MODELS
# ============================================

class CheckoutRequest(BaseModel):
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


def _public_plan(plan: Plan) -> dict:
    return {
        "plan_id": plan.plan_id,
        "name": plan.name,
        "description": plan.description,
        "price_cents": plan.price_cents,
        "currency": plan.currency,
        "interval": plan.interval.value,
        "payment_link_url": plan.payment_link_url,
    }


# ============================================
# ENDPOINTS
# ============================================

@router.get("/snapshots")
async def list_snapshots(services: Services = Depends(get_services)):
    """Published snapshot plans available for purchase."""
    plans = await services.catalog.list_plans(status=PlanStatus.PUBLISHED)
    return {"snapshots": [_public_plan(p) for p in plans], "total": len(plans)}


@router.get("/snapshots/{plan_id}")
async def get_snapshot(plan_id: str, services: Services = Depends(get_services)):
    try:
        plan = await services.catalog.get_published_plan(plan_id)
    except PlanNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Snapshot not found")
    return _public_plan(plan)


@router.post("/checkout/{plan_id}")
async def create_checkout(
    plan_id: str,
    body: Optional[CheckoutRequest] = None,
    services: Services = Depends(get_services),
):
    """Start a Stripe checkout session for a published plan."""
    body = body or CheckoutRequest()
    try:
        plan = await services.catalog.get_published_plan(plan_id)
    except PlanNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Snapshot not found")

    base = services.settings.public_app_url
    success_url = body.success_url or f"{base}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = body.cancel_url or f"{base}/snapshots/{plan_id}"
    try:
        url = services.gateway.create_checkout_session(plan, success_url, cancel_url)
    except AdapterError as e:
        logger.error("Checkout session failed for plan %s: %s", plan_id, e)
        code = status.HTTP_503_SERVICE_UNAVAILABLE if isinstance(e, AdapterTransient) else status.HTTP_409_CONFLICT
        raise HTTPException(status_code=code, detail="Checkout unavailable for this plan")

    logger.info("CHECKOUT_STARTED plan_id=%s", plan_id)
    return {"plan_id": plan_id, "checkout_url": url}
