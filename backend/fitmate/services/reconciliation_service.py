"""Event reconciler - applies an observed payment event to the purchase ledger

Safe to run any number of times, concurrently, from the webhook and from the
verify endpoint: the PAID transition and the role upgrade are both conditional
writes, so each side effect happens at most once whoever gets there first.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fitmate.core.logging import payments_logger
from fitmate.core.metrics import (
    reconciliations_counter, role_upgrades_counter, settlement_mismatch_counter
)
from fitmate.core.otel import get_tracer
from fitmate.models.enums import PurchaseStatus
from fitmate.services.plan_registry import MembershipPlanRegistry
from fitmate.services.purchase_ledger import PurchaseLedger
from fitmate.services.role_service import should_upgrade
from fitmate.services.stripe_service import ObservedEvent
from fitmate.services.user_service import get_user_by_id, upgrade_user_role

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

CLOSED_STATUSES = (PurchaseStatus.FAILED.value, PurchaseStatus.CANCELED.value)


class ReconcileOutcome(str, enum.Enum):
    SETTLED = "SETTLED"                      # this call moved the purchase to PAID
    ALREADY_SETTLED = "ALREADY_SETTLED"      # PAID before this call, or lost the race
    NOT_PAID = "NOT_PAID"                    # no completed payment, or paid after the purchase was closed
    UNRESOLVED = "UNRESOLVED"                # no purchase matches the event
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"  # storage error; retry is safe


@dataclass
class ReconciliationResult:
    outcome: ReconcileOutcome
    session_id: Optional[str] = None
    purchase_id: Optional[str] = None
    purchase_status: Optional[str] = None
    target_role: Optional[str] = None
    user_id: Optional[int] = None
    role: Optional[str] = None
    newly_paid: bool = False
    newly_upgraded: bool = False
    mismatches: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.purchase_status == PurchaseStatus.PAID.value

    @property
    def is_transient(self) -> bool:
        return self.outcome == ReconcileOutcome.TRANSIENT_FAILURE


class EventReconciler:
    """Settles purchases from gateway events; takes its ledger and gateway explicitly"""

    def __init__(self, ledger: PurchaseLedger, gateway=None):
        self.ledger = ledger
        self.gateway = gateway

    @property
    def db(self):
        return self.ledger.db

    def reconcile_session(self, session_id: str) -> ReconciliationResult:
        """Fetch the session live from the gateway and reconcile it.
        
        Raises:
            SessionNotFoundError, GatewayError: From the gateway read
        """
        event = self.gateway.retrieve_session(session_id)
        return self.reconcile(event)

    def reconcile(self, event: ObservedEvent) -> ReconciliationResult:
        with tracer.start_as_current_span("payments.reconcile") as span:
            span.set_attribute("payment.session_id", event.session_id or "")
            span.set_attribute("payment.source", event.source)
            result = self._reconcile(event)
            span.set_attribute("payment.outcome", result.outcome.value)
        reconciliations_counter.labels(source=event.source, outcome=result.outcome.value).inc()
        return result

    def _reconcile(self, event: ObservedEvent) -> ReconciliationResult:
        # 1. Resolve the purchase: gateway session id first, correlated purchase id second
        try:
            purchase = self.ledger.resolve(event.session_id, event.purchase_id)
        except SQLAlchemyError as e:
            return self._transient(event, None, e)

        if not purchase:
            logger.warning(
                f"No purchase for session {event.session_id} "
                f"(purchaseId={event.purchase_id}, source={event.source}) - ignoring"
            )
            return ReconciliationResult(outcome=ReconcileOutcome.UNRESOLVED, session_id=event.session_id)

        purchase_id = purchase.id
        user_id = purchase.user_id
        target_role = purchase.target_role
        if event.target_role and event.target_role != target_role:
            payments_logger.warning(
                f"Session {event.session_id} metadata targetRole={event.target_role} "
                f"but purchase {purchase_id} targets {target_role}; using the purchase"
            )

        result = ReconciliationResult(
            outcome=ReconcileOutcome.ALREADY_SETTLED,
            session_id=event.session_id,
            purchase_id=purchase_id,
            target_role=target_role,
            user_id=user_id,
        )

        # 2. Idempotency gate: never rewrite a PAID purchase
        already_paid = purchase.status == PurchaseStatus.PAID.value

        # 3. Payment truth
        if not already_paid and not event.paid:
            result.outcome = ReconcileOutcome.NOT_PAID
            result.purchase_status = purchase.status
            try:
                user = get_user_by_id(user_id, self.db)
            except SQLAlchemyError as e:
                return self._transient(event, purchase_id, e)
            result.role = user.role if user else None
            logger.info(f"Session {event.session_id} not paid yet (payment_status={event.payment_status})")
            return result

        try:
            if purchase.status in CLOSED_STATUSES:
                return self._paid_after_close(event, result, purchase.status)

            if not already_paid:
                # 4. Advisory cross-check against the plan for the promised role
                result.mismatches = self._cross_check(purchase_id, target_role, event)

                # 5. Conditional PENDING -> PAID write; losing the race is not an error
                result.newly_paid = self.ledger.mark_paid(
                    purchase_id, event.session_id, event.amount, event.currency
                )
                if result.newly_paid:
                    result.outcome = ReconcileOutcome.SETTLED
                    payments_logger.info(
                        f"Purchase {purchase_id} PAID via {event.source} "
                        f"(session={event.session_id}, amount={event.amount} {event.currency})"
                    )
                else:
                    current_status = self.ledger.get(purchase_id).status
                    if current_status in CLOSED_STATUSES:
                        return self._paid_after_close(event, result, current_status)
                    logger.info(f"Purchase {purchase_id} was settled concurrently; skipping write")

            # 6. Upgrade check runs even when the purchase was already PAID, which
            #    repairs a settlement that crashed between the PAID write and the upgrade
            result.newly_upgraded, result.role = self._apply_upgrade(user_id, target_role)
            result.purchase_status = self.ledger.get(purchase_id).status
        except SQLAlchemyError as e:
            return self._transient(event, purchase_id, e)

        return result

    def _cross_check(self, purchase_id: str, target_role: str, event: ObservedEvent) -> List[str]:
        """Compare reported amount/currency with the plan; log mismatches, never block"""
        plan = MembershipPlanRegistry.find_by_role(target_role)
        if not plan:
            payments_logger.warning(f"No plan grants {target_role}; cannot cross-check purchase {purchase_id}")
            return []

        mismatches = []
        if event.amount is not None and event.amount != plan.amount:
            mismatches.append("amount")
            payments_logger.warning(
                f"Amount mismatch on purchase {purchase_id}: got {event.amount}, expected {plan.amount}"
            )
        if event.currency and event.currency.upper() != plan.currency.upper():
            mismatches.append("currency")
            payments_logger.warning(
                f"Currency mismatch on purchase {purchase_id}: got {event.currency}, expected {plan.currency}"
            )
        for field_name in mismatches:
            settlement_mismatch_counter.labels(field=field_name).inc()
        return mismatches

    def _apply_upgrade(self, user_id: int, target_role: str):
        user = get_user_by_id(user_id, self.db)
        if not user:
            logger.error(f"User {user_id} for a paid purchase no longer exists")
            return False, None

        previous_role = user.role
        if not should_upgrade(previous_role, target_role):
            logger.info(f"User {user_id} already at {previous_role}; skip upgrade to {target_role}")
            return False, previous_role

        upgraded = upgrade_user_role(user_id, target_role, self.db)
        if upgraded:
            role_upgrades_counter.labels(role=target_role).inc()
            payments_logger.info(f"Upgraded user#{user_id} {previous_role} -> {target_role}")
        # Re-read: a concurrent caller may have upgraded (or gone higher) in between
        user = get_user_by_id(user_id, self.db)
        return upgraded, user.role

    def _paid_after_close(self, event: ObservedEvent, result: ReconciliationResult, status: str) -> ReconciliationResult:
        # FAILED/CANCELED are terminal; money received afterwards needs a human (refund or manual grant)
        payments_logger.error(
            f"Gateway reports session {event.session_id} paid via {event.source} but purchase "
            f"{result.purchase_id} is {status}; not settling, needs manual follow-up "
            f"(amount={event.amount} {event.currency}, user#{result.user_id})"
        )
        settlement_mismatch_counter.labels(field="status").inc()
        result.outcome = ReconcileOutcome.NOT_PAID
        result.purchase_status = status
        user = get_user_by_id(result.user_id, self.db)
        result.role = user.role if user else None
        return result

    def _transient(self,event: ObservedEvent, purchase_id: Optional[str], error: Exception) -> ReconciliationResult:
        self.db.rollback()
        logger.error(
            f"Transient failure reconciling session {event.session_id} "
            f"(purchase={purchase_id}, source={event.source}): {error}",
            exc_info=True
        )
        return ReconciliationResult(
            outcome=ReconcileOutcome.TRANSIENT_FAILURE,
            session_id=event.session_id,
            purchase_id=purchase_id,
            error=str(error),
        )

    def close(self, event: ObservedEvent, status: PurchaseStatus) -> ReconciliationResult:
        """Record an expired or failed checkout (PENDING -> CANCELED/FAILED only)"""
        try:
            purchase = self.ledger.resolve(event.session_id, event.purchase_id)
            if not purchase:
                return ReconciliationResult(outcome=ReconcileOutcome.UNRESOLVED, session_id=event.session_id)
            purchase_id = purchase.id
            closed = self.ledger.close(purchase_id, status)
            purchase = self.ledger.get(purchase_id)
        except SQLAlchemyError as e:
            return self._transient(event, None, e)

        if closed:
            payments_logger.info(f"Purchase {purchase_id} -> {status.value} (session={event.session_id})")
        outcome = ReconcileOutcome.ALREADY_SETTLED if purchase.status == PurchaseStatus.PAID.value else ReconcileOutcome.NOT_PAID
        return ReconciliationResult(
            outcome=outcome,
            session_id=event.session_id,
            purchase_id=purchase_id,
            purchase_status=purchase.status,
            target_role=purchase.target_role,
            user_id=purchase.user_id,
        )
