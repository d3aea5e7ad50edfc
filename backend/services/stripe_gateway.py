"""
Stripe payment gateway adapter.

Inbound: verify webhook signatures and translate checkout completions into
CheckoutEvent. Outbound: checkout sessions and payment links for published
plans (products/prices created on demand, plan_id carried in metadata).
"""
import json
import logging
from typing import Any, Dict, Optional, Tuple

import stripe
from pydantic import ValidationError

from errors import AdapterPermanent, AdapterTransient, InvalidCheckoutEvent
from models import CheckoutEvent, Plan

logger = logging.getLogger(__name__)

CHECKOUT_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})

_INTERVALS = {"MONTH": "month", "YEAR": "year"}


class WebhookVerificationError(Exception):
    """Webhook payload failed signature verification or could not be parsed."""
    pass


def _classify_stripe_error(operation: str, e: Exception):
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return AdapterTransient(f"{operation} failed: {e}")
    if isinstance(e, stripe.APIError) and not isinstance(e, stripe.InvalidRequestError):
        return AdapterTransient(f"{operation} failed: {e}")
    return AdapterPermanent(f"{operation} failed: {e}")


class StripeGateway:
    def __init__(self, secret_key: str = "", webhook_secret: str = ""):
        self.webhook_secret = webhook_secret
        if secret_key:
            stripe.api_key = secret_key

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        return cls(secret_key=settings.stripe_secret_key, webhook_secret=settings.stripe_webhook_secret)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def verify_and_parse(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Return the event as a plain dict once its signature checks out."""
        if self.webhook_secret:
            try:
                stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            except stripe.SignatureVerificationError as e:
                logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET)", e)
                raise WebhookVerificationError("Invalid signature") from e
            except ValueError as e:
                raise WebhookVerificationError("Invalid payload") from e
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        try:
            return json.loads(payload)
        except (ValueError, TypeError) as e:
            raise WebhookVerificationError("Invalid payload") from e

    def parse_checkout_event(self, event: Dict[str, Any]) -> Optional[CheckoutEvent]:
        """CheckoutEvent for checkout completions, None for any other event type.

        The checkout session id is the event id: both completed and
        async_payment_succeeded deliveries for one checkout map to one job.
        """
        if event.get("type") not in CHECKOUT_EVENT_TYPES:
            return None
        session = (event.get("data") or {}).get("object") or {}
        metadata = session.get("metadata") or {}
        details = session.get("customer_details") or {}
        email = details.get("email") or session.get("customer_email")
        customer = session.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        fields = dict(
            event_id=session.get("id") or "",
            plan_id=metadata.get("plan_id") or session.get("client_reference_id") or "",
            customer_id=customer or email or session.get("id") or "",
            customer_email=email or None,
            customer_name=details.get("name") or metadata.get("customer_name"),
            payment_status=session.get("payment_status") or "unpaid",
        )
        try:
            return CheckoutEvent(**fields)
        except ValidationError as e:
            if not fields["customer_email"]:
                raise InvalidCheckoutEvent(f"Checkout {fields['event_id']} is malformed: {e}") from e
        # Stripe accepts addresses email-validator rejects (reserved TLDs); provision without it
        logger.warning("Checkout %s has unusable customer email %r, dropping it", fields["event_id"], email)
        fields["customer_email"] = None
        try:
            return CheckoutEvent(**fields)
        except ValidationError as e:
            raise InvalidCheckoutEvent(f"Checkout {fields['event_id']} is malformed: {e}") from e

    @staticmethod
    def payment_link_id(event: Dict[str, Any]) -> Optional[str]:
        session = (event.get("data") or {}).get("object") or {}
        link = session.get("payment_link")
        if isinstance(link, dict):
            return link.get("id")
        return link

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def create_checkout_session(self, plan: Plan, success_url: str, cancel_url: str) -> str:
        if not plan.stripe_price_id:
            raise AdapterPermanent(f"Plan {plan.plan_id} has no Stripe price")
        try:
            session = stripe.checkout.Session.create(
                mode="subscription" if plan.is_recurring else "payment",
                line_items=[{"price": plan.stripe_price_id, "quantity": 1}],
                metadata={"plan_id": plan.plan_id},
                client_reference_id=plan.plan_id,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as e:
            raise _classify_stripe_error("create_checkout_session", e) from e
        return session["url"]

    def ensure_payment_link(self, plan: Plan) -> Tuple[str, str, str, str]:
        """Create whatever of product/price/payment link the plan is missing.

        Returns (product_id, price_id, payment_link_id, payment_link_url).
        """
        try:
            product_id = plan.stripe_product_id
            if not product_id:
                product = stripe.Product.create(
                    name=plan.name,
                    description=plan.description or None,
                    metadata={"plan_id": plan.plan_id},
                )
                product_id = product["id"]
                logger.info("Stripe product created for plan %s: %s", plan.plan_id, product_id)

            price_id = plan.stripe_price_id
            if not price_id:
                price_args: Dict[str, Any] = {
                    "product": product_id,
                    "unit_amount": plan.price_cents,
                    "currency": plan.currency.lower(),
                    "metadata": {"plan_id": plan.plan_id},
                }
                if plan.is_recurring:
                    price_args["recurring"] = {"interval": _INTERVALS[plan.interval.value]}
                price = stripe.Price.create(**price_args)
                price_id = price["id"]
                logger.info("Stripe price created for plan %s: %s", plan.plan_id, price_id)

            if plan.stripe_payment_link_id and plan.payment_link_url and price_id == plan.stripe_price_id:
                return product_id, price_id, plan.stripe_payment_link_id, plan.payment_link_url

            link = stripe.PaymentLink.create(
                line_items=[{"price": price_id, "quantity": 1}],
                metadata={"plan_id": plan.plan_id},
            )
        except stripe.StripeError as e:
            raise _classify_stripe_error("ensure_payment_link", e) from e
        logger.info("Stripe payment link created for plan %s: %s", plan.plan_id, link["url"])
        return product_id, price_id, link["id"], link["url"]
