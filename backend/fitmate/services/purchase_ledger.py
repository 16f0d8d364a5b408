"""Purchase ledger - durable record of membership checkout attempts

All status changes are conditional UPDATEs so concurrent writers (webhook and
verify racing on the same session) cannot both win.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from fitmate.core.config import settings
from fitmate.models.enums import PurchaseStatus
from fitmate.models.membership_purchase import MembershipPurchase

logger = logging.getLogger(__name__)


class PurchaseLedger:
    """Thin transactional store for MembershipPurchase rows"""

    def __init__(self, db: Session):
        self.db = db

    def create_pending(self, user_id: int, target_role: str, amount: int, currency: str) -> MembershipPurchase:
        purchase = MembershipPurchase(
            user_id=user_id,
            target_role=target_role,
            status=PurchaseStatus.PENDING.value,
            amount=amount,
            currency=currency,
            gateway=settings.PAYMENT_GATEWAY,
        )
        self.db.add(purchase)
        self.db.commit()
        self.db.refresh(purchase)
        logger.info(f"Created pending purchase {purchase.id} for user {user_id} -> {target_role}")
        return purchase

    def get(self, purchase_id: str) -> Optional[MembershipPurchase]:
        if not purchase_id:
            return None
        return self.db.query(MembershipPurchase).filter(MembershipPurchase.id == purchase_id).first()

    def get_by_external_id(self, external_id: str) -> Optional[MembershipPurchase]:
        if not external_id:
            return None
        return self.db.query(MembershipPurchase).filter(MembershipPurchase.external_id == external_id).first()

    def resolve(self, session_id: Optional[str], purchase_id: Optional[str]) -> Optional[MembershipPurchase]:
        """Find the purchase for an event: by gateway session first, then by correlated purchase id"""
        return self.get_by_external_id(session_id) or self.get(purchase_id)

    def list_for_user(self, user_id: int) -> List[MembershipPurchase]:
        return (
            self.db.query(MembershipPurchase)
            .filter(MembershipPurchase.user_id == user_id)
            .order_by(MembershipPurchase.created_at.desc())
            .all()
        )

    def attach_external_id(self, purchase_id: str, external_id: str) -> None:
        self.db.query(MembershipPurchase).filter(MembershipPurchase.id == purchase_id).update(
            {
                MembershipPurchase.external_id: external_id,
                MembershipPurchase.updated_at: datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
        self.db.commit()

    def mark_paid(
        self,
        purchase_id: str,
        external_id: str,
        amount: Optional[int],
        currency: Optional[str],
    ) -> bool:
        """Set status=PAID where id=purchase_id and status == PENDING.
        
        Returns:
            True if this call performed the transition, False if the purchase
            left PENDING first (settled by a concurrent call, or closed) or does not exist
        """
        values = {
            MembershipPurchase.status: PurchaseStatus.PAID.value,
            MembershipPurchase.external_id: external_id,
            MembershipPurchase.gateway: settings.PAYMENT_GATEWAY,
            MembershipPurchase.updated_at: datetime.now(timezone.utc),
        }
        if amount is not None:
            values[MembershipPurchase.amount] = amount
        if currency:
            values[MembershipPurchase.currency] = currency.upper()

        updated = self.db.query(MembershipPurchase).filter(
            MembershipPurchase.id == purchase_id,
            MembershipPurchase.status == PurchaseStatus.PENDING.value,
        ).update(values, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def close(self, purchase_id: str, status: PurchaseStatus) -> bool:
        """Move a PENDING purchase to FAILED or CANCELED; no-op for any other state"""
        if status not in (PurchaseStatus.FAILED, PurchaseStatus.CANCELED):
            raise ValueError(f"Cannot close a purchase as {status.value}")
        updated = self.db.query(MembershipPurchase).filter(
            MembershipPurchase.id == purchase_id,
            MembershipPurchase.status == PurchaseStatus.PENDING.value,
        ).update(
            {
                MembershipPurchase.status: status.value,
                MembershipPurchase.updated_at: datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
        self.db.commit()
        return updated == 1
