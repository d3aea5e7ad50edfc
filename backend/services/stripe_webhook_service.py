"""Stripe Webhook Service - checkout completion -> provisioning job.

Key Principles:
1. Signature verification: events must be signed when a webhook secret is set
2. Idempotency: each Stripe event id is processed once (stripe_events ledger),
   and each checkout maps to exactly one provisioning job (engine)
3. Fast acknowledgement: the job is persisted and enqueued, never executed inline
4. Failures are logged and recorded, never raised back to Stripe

Events Handled:
- checkout.session.completed (primary provisioning trigger)
- checkout.session.async_payment_succeeded (delayed payment methods)
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from errors import InvalidCheckoutEvent, PaymentNotCompleted, PlanNotFound
from models import StripeEventStatus
from services.stripe_gateway import StripeGateway, WebhookVerificationError

logger = logging.getLogger(__name__)


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Extract safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "plan_id": metadata.get("plan_id") or obj.get("client_reference_id"),
        "checkout_session_id": obj.get("id") if str(event.get("type", "")).startswith("checkout.session") else None,
    }


class StripeWebhookService:
    def __init__(self, db, gateway: StripeGateway, engine, catalog):
        self._db = db
        self.gateway = gateway
        self.engine = engine
        self.catalog = catalog

    async def process_webhook(self, payload: bytes, signature: str) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        # Step 1: Verify signature
        try:
            event = self.gateway.verify_and_parse(payload, signature)
        except WebhookVerificationError as e:
            return False, str(e), None

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s plan_id=%s checkout_session_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("plan_id"), ctx.get("checkout_session_id"),
        )

        # Step 2: Idempotency check
        existing = await self._db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})
        if existing and existing.get("status") in (StripeEventStatus.PROCESSED.value, StripeEventStatus.IGNORED.value):
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event
        record = {
            "event_id": event_id,
            "type": event_type,
            "received_at": datetime.now(timezone.utc),
            "status": StripeEventStatus.RECEIVED.value,
            "error": None,
            "job_id": None,
            "checkout_session_id": ctx.get("checkout_session_id"),
        }
        if existing:
            await self._db.stripe_events.update_one({"event_id": event_id}, {"$set": record})
        else:
            try:
                await self._db.stripe_events.insert_one(record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        # Step 4: Process event
        status, message, details = await self._handle_event(event)
        await self._db.stripe_events.update_one(
            {"event_id": event_id},
            {
                "$set": {
                    "status": status.value,
                    "processed_at": datetime.now(timezone.utc),
                    "job_id": details.get("job_id"),
                    "error": details.get("error"),
                }
            },
        )
        details["event_id"] = event_id
        return True, message, details

    async def _handle_event(self, event: Dict[str, Any]) -> Tuple[StripeEventStatus, str, Dict[str, Any]]:
        try:
            checkout = self.gateway.parse_checkout_event(event)
        except InvalidCheckoutEvent as e:
            logger.error("Invalid checkout event %s: %s", event.get("id"), e)
            return StripeEventStatus.FAILED, "Invalid checkout event", {"error": str(e)}
        if checkout is None:
            logger.info(f"Unhandled event type: {event.get('type')}")
            return StripeEventStatus.IGNORED, "Event type not handled", {}

        if not checkout.plan_id:
            # Payment links do not copy their metadata onto the session
            plan = await self.catalog.get_plan_by_payment_link(self.gateway.payment_link_id(event))
            if plan:
                checkout = checkout.model_copy(update={"plan_id": plan.plan_id})

        try:
            handle = await self.engine.submit_checkout_event(checkout)
        except PlanNotFound as e:
            logger.error("WEBHOOK_PLAN_NOT_FOUND checkout=%s plan_id=%s", checkout.event_id, e.plan_id)
            return StripeEventStatus.FAILED, "Plan not found", {"error": str(e)}
        except PaymentNotCompleted as e:
            logger.info("Checkout %s not paid yet: %s", checkout.event_id, e)
            return StripeEventStatus.IGNORED, "Payment not completed", {"error": str(e)}
        except InvalidCheckoutEvent as e:
            logger.error("Invalid checkout event %s: %s", event.get("id"), e)
            return StripeEventStatus.FAILED, "Invalid checkout event", {"error": str(e)}

        message = "Provisioning enqueued" if handle.created else "Provisioning already enqueued"
        return StripeEventStatus.PROCESSED, message, {
            "job_id": handle.job_id,
            "job_state": handle.state.value,
            "created": handle.created,
        }
