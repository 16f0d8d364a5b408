"""Stripe gateway adapter - checkout sessions, live session reads and webhook verification"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from fitmate.core.config import settings
from fitmate.services.errors import (
    GatewayConfigurationError, GatewayError, InvalidWebhookError, SessionNotFoundError
)

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
if settings.STRIPE_API_VERSION:
    stripe.api_version = settings.STRIPE_API_VERSION

PAID_PAYMENT_STATUS = "paid"


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


@dataclass(frozen=True)
class ObservedEvent:
    """What the gateway reports about one checkout session"""
    session_id: str
    paid: bool
    amount: Optional[int] = None
    currency: Optional[str] = None
    purchase_id: Optional[str] = None
    target_role: Optional[str] = None
    user_id: Optional[str] = None
    payment_status: Optional[str] = None
    source: str = "webhook"


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def observed_event_from_session(session: Any, source: str) -> ObservedEvent:
    """Build an ObservedEvent from a Checkout Session (webhook payload or live read)"""
    metadata = _get_stripe_value(session, "metadata", {}) or {}
    payment_status = _get_stripe_value(session, "payment_status")
    currency = _get_stripe_value(session, "currency")
    return ObservedEvent(
        session_id=_get_stripe_value(session, "id"),
        # A 'complete' session can still be waiting on a delayed payment method
        paid=payment_status == PAID_PAYMENT_STATUS,
        amount=_get_stripe_value(session, "amount_total"),
        currency=currency.upper() if currency else None,
        purchase_id=_get_stripe_value(metadata, "purchaseId"),
        target_role=_get_stripe_value(metadata, "targetRole"),
        user_id=_get_stripe_value(metadata, "userId"),
        payment_status=payment_status,
        source=source,
    )


class StripeGateway:
    """Everything the payment flow needs from Stripe, behind one substitutable object"""

    def __init__(self, api_key: str = None, webhook_secret: str = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET

    def _require_api_key(self):
        if not self.api_key:
            logger.error("Stripe secret key not configured.")
            raise GatewayConfigurationError("Stripe not configured")

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: str = None,
    ) -> CheckoutSession:
        """Create a one-off payment Checkout Session for a single plan price
        
        Raises:
            GatewayConfigurationError: If Stripe is not configured
            GatewayError: If Stripe rejects or fails the request
        """
        self._require_api_key()
        checkout_params = {
            "mode": "payment",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "api_key": self.api_key,
        }
        if customer_email:
            checkout_params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(**checkout_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session for price {price_id}: {e}")
            raise GatewayError(f"Failed to create checkout session: {e}") from e
        return CheckoutSession(id=session.id, url=session.url)

    def retrieve_session(self, session_id: str) -> ObservedEvent:
        """Authoritative live read of a Checkout Session
        
        Raises:
            SessionNotFoundError: If Stripe has no such session
            GatewayError: For any other Stripe failure
        """
        self._require_api_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise SessionNotFoundError(f"Checkout session {session_id} not found") from e
            logger.error(f"Stripe rejected session lookup {session_id}: {e}")
            raise GatewayError(str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving session {session_id}: {e}")
            raise GatewayError(str(e)) from e
        return observed_event_from_session(session, source="verify")

    def construct_event(self, payload: bytes, sig_header: str) -> Any:
        """Verify the webhook signature and parse the event
        
        Raises:
            InvalidWebhookError: For a missing secret, bad payload or bad signature
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise InvalidWebhookError("Webhook secret not configured")
        if not sig_header:
            raise InvalidWebhookError("Missing stripe-signature header")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise InvalidWebhookError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise InvalidWebhookError("Invalid signature") from e
