"""
Stripe boundary.

Inbound: verify the Stripe-Signature header and normalize
customer.subscription.* events into typed SubscriptionEvent variants.
Outbound: cancel a replaced subscription, create a billing customer.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe
from pydantic import ValidationError

from entitlement_engine.errors import InvalidEventError, TransientExternalError
from entitlement_engine.schemas.events import parse_subscription_event

logger = logging.getLogger(__name__)

# Stripe event type -> SubscriptionEvent kind
EVENT_KINDS = {
    "customer.subscription.created": "created",
    "customer.subscription.updated": "updated",
    "customer.subscription.deleted": "deleted",
    "customer.subscription.trial_will_end": "trial_will_end",
}


def _first_price(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return {}
    return items[0].get("price") or items[0].get("plan") or {}


def _ref(value: Any) -> Optional[str]:
    # Expanded objects carry their id; unexpanded fields are plain strings
    if isinstance(value, dict):
        return value.get("id")
    return value


def event_from_payload(payload: Dict[str, Any]):
    """
    Normalize a decoded Stripe event.

    Returns:
        SubscriptionEvent variant, or None for event types the engine
        does not consume

    Raises:
        InvalidEventError: If a consumed event is missing required fields
    """
    kind = EVENT_KINDS.get(payload.get("type", ""))
    if kind is None:
        return None

    subscription = (payload.get("data") or {}).get("object") or {}
    price = _first_price(subscription)

    try:
        return parse_subscription_event({
            "kind": kind,
            "id": payload.get("id"),
            "customer_ref": _ref(subscription.get("customer")),
            "subscription_ref": subscription.get("id"),
            "product_ref": _ref(price.get("product")),
            "unit_amount": price.get("unit_amount"),
        })
    except ValidationError as e:
        raise InvalidEventError(f"Malformed {payload.get('type')} event: {e}") from e


class StripeBillingPlatform:
    """Stripe API calls made by the engine."""

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def parse_webhook(self, body: bytes, signature: Optional[str]):
        """
        Verify and normalize a webhook delivery.

        Args:
            body: Raw request body
            signature: Stripe-Signature header value

        Returns:
            SubscriptionEvent variant, or None for ignored event types

        Raises:
            InvalidEventError: Bad signature or malformed payload
        """
        if not self.webhook_secret:
            raise InvalidEventError("Webhook secret is not configured")
        if not signature:
            raise InvalidEventError("Missing Stripe-Signature header")

        payload_text = body.decode("utf-8") if isinstance(body, bytes) else body
        try:
            stripe.WebhookSignature.verify_header(payload_text, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe signature verification failed", extra={"error": str(e)})
            raise InvalidEventError("Invalid webhook signature") from e

        try:
            payload = json.loads(payload_text)
        except ValueError as e:
            raise InvalidEventError("Webhook body is not JSON") from e

        event = event_from_payload(payload)
        if event is None:
            logger.debug("Ignoring Stripe event type", extra={"type": payload.get("type")})
        return event

    def cancel_subscription(self, subscription_ref: str) -> None:
        """
        Cancel a subscription immediately.

        A subscription that no longer exists counts as cancelled.

        Raises:
            TransientExternalError: On any other Stripe failure
        """
        try:
            stripe.Subscription.cancel(subscription_ref, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.info("Subscription already gone", extra={
                    "subscription_ref": subscription_ref,
                })
                return
            raise TransientExternalError(str(e), service="billing_platform") from e
        except stripe.StripeError as e:
            raise TransientExternalError(str(e), service="billing_platform") from e

        logger.info("Subscription cancelled", extra={"subscription_ref": subscription_ref})

    def create_customer(self, email: Optional[str], account_id: str) -> str:
        """Create a billing customer and return its id."""
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"account_id": account_id},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise TransientExternalError(str(e), service="billing_platform") from e
        return customer["id"]
