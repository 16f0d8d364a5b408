"""MembershipPurchase model"""
import uuid
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from fitmate.models.base import Base
from fitmate.models.enums import PurchaseStatus


class MembershipPurchase(Base):
    """One membership-upgrade checkout attempt"""
    __tablename__ = "membership_purchases"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    target_role = Column(String(32), nullable=False)
    status = Column(String(20), default=PurchaseStatus.PENDING.value, nullable=False)  # 'PENDING', 'PAID', 'FAILED', 'CANCELED'
    amount = Column(Integer, nullable=True)  # Minor currency units (satang, cents)
    currency = Column(String(8), nullable=True)
    gateway = Column(String(32), nullable=True)
    external_id = Column(String(255), unique=True, nullable=True)  # Gateway checkout session ID
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    # Relationship
    user = relationship("User", back_populates="membership_purchases")
    
    __table_args__ = (
        Index('ix_membership_purchases_user_created', 'user_id', 'created_at'),
    )
