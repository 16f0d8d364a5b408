"""Webhook and verify entry points into the event reconciler

Both adapters end in EventReconciler; they differ only in where the observed
event comes from (signed push vs. live read) and in how a result is answered.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fitmate.core.logging import webhooks_logger
from fitmate.core.metrics import webhook_events_counter
from fitmate.models.enums import PurchaseStatus
from fitmate.models.stripe_event import StripeEvent
from fitmate.services.errors import ReconciliationFailedError
from fitmate.services.purchase_ledger import PurchaseLedger
from fitmate.services.reconciliation_service import EventReconciler, ReconciliationResult
from fitmate.services.stripe_service import StripeGateway, observed_event_from_session

logger = logging.getLogger(__name__)

PAID_EVENT_TYPES = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
CLOSING_EVENT_TYPES = {
    "checkout.session.expired": PurchaseStatus.CANCELED,
    "checkout.session.async_payment_failed": PurchaseStatus.FAILED,
}


# ============================================================================
# WEBHOOK EVENT LOG
# ============================================================================

def log_stripe_event(event_id: str, event_type: str, payload: Any, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        return stripe_event
    stripe_event = StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        payload=payload,
        processed=False
    )
    db.add(stripe_event)
    try:
        db.commit()
    except IntegrityError:
        # Same event delivered twice at once; the other delivery inserted it
        db.rollback()
        return db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: str = None, processed: bool = True):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = processed
        stripe_event.processed_at = datetime.now(timezone.utc) if processed else None
        stripe_event.error_message = error_message
        db.commit()


# ============================================================================
# WEBHOOK PROCESSING
# ============================================================================

def process_stripe_webhook(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    gateway: StripeGateway,
) -> Dict[str, Any]:
    """Verify, log and reconcile one Stripe webhook delivery
    
    Acknowledges every verified event whose reconciliation returns a result,
    including events that match no purchase, so Stripe does not redeliver
    what we deliberately ignore.
    
    Raises:
        InvalidWebhookError: Signature or payload verification failed (respond 400)
        ReconciliationFailedError: Transient failure; Stripe should retry (respond 5xx)
    """
    event = gateway.construct_event(payload, sig_header)
    event_id = event["id"]
    event_type = event["type"]

    stripe_event = log_stripe_event(event_id, event_type, event, db)
    if stripe_event.processed:
        webhooks_logger.info(f"Webhook event {event_id} already processed")
        webhook_events_counter.labels(event_type=event_type, status="duplicate").inc()
        return {"received": True, "status": "already_processed"}

    data = event["data"]["object"]
    reconciler = EventReconciler(PurchaseLedger(db), gateway)

    if event_type in PAID_EVENT_TYPES:
        result = reconciler.reconcile(observed_event_from_session(data, source="webhook"))
    elif event_type in CLOSING_EVENT_TYPES:
        result = reconciler.close(
            observed_event_from_session(data, source="webhook"), CLOSING_EVENT_TYPES[event_type]
        )
    else:
        mark_stripe_event_processed(event_id, db)
        webhook_events_counter.labels(event_type=event_type, status="ignored").inc()
        return {"received": True, "status": "ignored"}

    if result.is_transient:
        # Left unprocessed so the redelivery runs reconciliation again
        mark_stripe_event_processed(event_id, db, error_message=result.error, processed=False)
        webhook_events_counter.labels(event_type=event_type, status="retry").inc()
        raise ReconciliationFailedError(f"Reconciliation of {event_id} failed: {result.error}")

    mark_stripe_event_processed(event_id, db)
    webhook_events_counter.labels(event_type=event_type, status="processed").inc()
    webhooks_logger.info(f"Processed webhook event {event_id} ({event_type}): {result.outcome.value}")
    return {"received": True, "status": "processed", "outcome": result.outcome.value}


# ============================================================================
# VERIFY ON RETURN
# ============================================================================

def build_verify_response(result: ReconciliationResult) -> Dict[str, Any]:
    purchase = None
    if result.purchase_id:
        purchase = {
            "id": result.purchase_id,
            "status": result.purchase_status,
            "targetRole": result.target_role,
        }
    user = None
    if result.user_id is not None:
        user = {"id": result.user_id, "role": result.role}
    return {
        "sessionId": result.session_id,
        "outcome": result.outcome.value,
        "settled": result.settled,
        "purchase": purchase,
        "user": user,
        "newlyPaid": result.newly_paid,
        "newlyUpgraded": result.newly_upgraded,
    }


def verify_checkout_session(session_id: str, db: Session, gateway: StripeGateway) -> Dict[str, Any]:
    """Reconcile a session from a live gateway read (browser return from checkout)
    
    Safe to call any number of times for the same session.
    
    Raises:
        SessionNotFoundError: Stripe has no such session
        GatewayError, GatewayConfigurationError: Stripe read failed
        ReconciliationFailedError: Transient storage failure; the client may retry
    """
    reconciler = EventReconciler(PurchaseLedger(db), gateway)
    result = reconciler.reconcile_session(session_id)
    if result.is_transient:
        raise ReconciliationFailedError(f"Could not reconcile session {session_id}: {result.error}")
    return build_verify_response(result)
