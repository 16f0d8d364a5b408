"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from fitmate.models.base import Base
from fitmate.models.enums import Role, PurchaseStatus
from fitmate.models.user import User
from fitmate.models.membership_purchase import MembershipPurchase
from fitmate.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "Role", "PurchaseStatus",
    "User", "MembershipPurchase", "StripeEvent"
]
