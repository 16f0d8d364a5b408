"""Checkout initiator - records a pending purchase, then opens a Stripe Checkout Session for it"""
import logging
from dataclasses import dataclass
from typing import Dict

from sqlalchemy.orm import Session

from fitmate.core.config import settings
from fitmate.core.metrics import checkout_sessions_counter
from fitmate.services.errors import (
    AlreadyAtOrAboveTargetError, PaymentServiceError, UnknownPriceError, UserNotFoundError
)
from fitmate.services.plan_registry import MembershipPlanRegistry
from fitmate.services.purchase_ledger import PurchaseLedger
from fitmate.services.role_service import should_upgrade
from fitmate.services.stripe_service import StripeGateway
from fitmate.services.user_service import get_user_by_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    session_id: str
    purchase_id: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "checkoutUrl": self.checkout_url,
            "sessionId": self.session_id,
            "purchaseId": self.purchase_id,
        }


def build_return_urls(success_path: str, cancel_path: str, frontend_url: str = None):
    """Success URL carries the session id back so the frontend can call verify"""
    origin = (frontend_url or settings.FRONTEND_URL).rstrip("/")
    success_url = f"{origin}{success_path}?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{origin}{cancel_path}"
    return success_url, cancel_url


def initiate_checkout(
    user_id: int,
    price_id: str,
    db: Session,
    gateway: StripeGateway,
    success_path: str = "/success",
    cancel_path: str = "/cancel",
) -> CheckoutResult:
    """Start a membership upgrade checkout
    
    Each step is durable before the next: the PENDING purchase is committed
    before Stripe is called, and the session id is attached afterwards. If
    Stripe fails, the purchase stays PENDING without a session and is never
    settled.
    
    Raises:
        UnknownPriceError: price_id is not a membership plan
        UserNotFoundError: user_id does not exist
        AlreadyAtOrAboveTargetError: user already holds the plan's role or higher
        GatewayError, GatewayConfigurationError: Stripe call failed
    """
    plan = MembershipPlanRegistry.get(price_id)
    if not plan:
        checkout_sessions_counter.labels(status="rejected").inc()
        raise UnknownPriceError(f"Invalid priceId: {price_id}")

    user = get_user_by_id(user_id, db)
    if not user:
        checkout_sessions_counter.labels(status="rejected").inc()
        raise UserNotFoundError(f"User {user_id} not found")

    if not should_upgrade(user.role, plan.role):
        checkout_sessions_counter.labels(status="rejected").inc()
        raise AlreadyAtOrAboveTargetError(
            f"User {user_id} already has {user.role}, equal or higher than {plan.role.value}"
        )

    ledger = PurchaseLedger(db)
    purchase = ledger.create_pending(user.id, plan.role.value, plan.amount, plan.currency)
    purchase_id = purchase.id

    success_url, cancel_url = build_return_urls(success_path, cancel_path)
    try:
        session = gateway.create_checkout_session(
            price_id,
            success_url,
            cancel_url,
            metadata={
                "purchaseId": purchase_id,
                "userId": str(user.id),
                "targetRole": plan.role.value,
            },
            customer_email=user.email,
        )
    except PaymentServiceError:
        checkout_sessions_counter.labels(status="failed").inc()
        logger.warning(f"Checkout session creation failed; purchase {purchase_id} left PENDING without a session")
        raise

    ledger.attach_external_id(purchase_id, session.id)
    checkout_sessions_counter.labels(status="created").inc()
    logger.info(f"Checkout session {session.id} created for purchase {purchase_id} (user {user.id} -> {plan.role.value})")
    return CheckoutResult(checkout_url=session.url, session_id=session.id, purchase_id=purchase_id)
