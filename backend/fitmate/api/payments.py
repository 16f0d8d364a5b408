"""Membership payment API routes (Stripe checkout, webhook, verify)"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from fitmate.core.config import settings
from fitmate.db.session import get_db
from fitmate.schemas.payments import CheckoutRequest
from fitmate.services.checkout_service import initiate_checkout
from fitmate.services.errors import InvalidWebhookError, PaymentServiceError, ReconciliationFailedError
from fitmate.services.plan_registry import MembershipPlanRegistry
from fitmate.services.purchase_ledger import PurchaseLedger
from fitmate.services.settlement_service import process_stripe_webhook, verify_checkout_session
from fitmate.services.stripe_service import StripeGateway

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
logger = logging.getLogger(__name__)


def get_gateway() -> StripeGateway:
    """Dependency: payment gateway client (overridden with a fake in tests)"""
    return StripeGateway()


def _purchase_to_dict(purchase):
    return {
        "id": purchase.id,
        "userId": purchase.user_id,
        "targetRole": purchase.target_role,
        "status": purchase.status,
        "amount": purchase.amount,
        "currency": purchase.currency,
        "gateway": purchase.gateway,
        "externalId": purchase.external_id,
        "createdAt": purchase.created_at.isoformat() if purchase.created_at else None,
        "updatedAt": purchase.updated_at.isoformat() if purchase.updated_at else None,
    }


@router.post("/checkout")
def create_checkout(
    checkout_request: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway)
):
    """Create a pending purchase and a Stripe Checkout Session for it"""
    try:
        result = initiate_checkout(
            checkout_request.user_id,
            checkout_request.price_id,
            db,
            gateway,
            success_path=checkout_request.success_path,
            cancel_path=checkout_request.cancel_path,
        )
    except PaymentServiceError as e:
        raise HTTPException(e.status_code, {"error": e.error_code, "message": e.message})
    return result.to_dict()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway)
):
    """Handle Stripe webhook events
    
    The body is read as raw bytes; signature verification needs the exact payload.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    
    try:
        return process_stripe_webhook(payload, sig_header, db, gateway)
    except InvalidWebhookError as e:
        raise HTTPException(400, e.message)
    except ReconciliationFailedError as e:
        # Non-2xx makes Stripe redeliver; every step is safe to repeat
        logger.error(f"Webhook reconciliation failed, asking Stripe to retry: {e}")
        raise HTTPException(500, "Webhook handler failed")


@router.get("/verify")
def verify_session(
    session_id: Optional[str] = Query(None, description="Stripe checkout session ID"),
    session_id_camel: Optional[str] = Query(None, alias="sessionId"),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway)
):
    """
    Reconcile a checkout session from a live Stripe read.
    Called by the frontend when the browser returns from Checkout; repeat calls are harmless.
    """
    session_id = session_id or session_id_camel
    if not session_id:
        raise HTTPException(400, "session_id required")
    try:
        return verify_checkout_session(session_id, db, gateway)
    except PaymentServiceError as e:
        raise HTTPException(e.status_code, {"error": e.error_code, "message": e.message})


@router.get("/plans")
def list_plans():
    """List purchasable membership plans"""
    return {"plans": [plan.to_dict() for plan in MembershipPlanRegistry.all_plans()]}


@router.get("/purchases")
def list_user_purchases(user_id: int = Query(...), db: Session = Depends(get_db)):
    """A user's purchase history, newest first"""
    purchases = PurchaseLedger(db).list_for_user(user_id)
    return {"purchases": [_purchase_to_dict(p) for p in purchases]}


@router.get("/purchases/{purchase_id}")
def get_purchase(purchase_id: str, db: Session = Depends(get_db)):
    purchase = PurchaseLedger(db).get(purchase_id)
    if not purchase:
        raise HTTPException(404, "Purchase not found")
    return _purchase_to_dict(purchase)


@router.get("/config")
def get_stripe_config():
    """Get Stripe publishable key for frontend"""
    publishable_key = settings.STRIPE_PUBLISHABLE_KEY
    if not publishable_key:
        raise HTTPException(500, "Stripe not configured")
    return {"publishable_key": publishable_key}
