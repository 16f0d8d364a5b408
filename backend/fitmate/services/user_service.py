"""User lookups and the monotonic role upgrade"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from fitmate.models.user import User
from fitmate.services.role_service import roles_below, to_role

logger = logging.getLogger(__name__)


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def upgrade_user_role(user_id: int, target_role, db: Session) -> bool:
    """Raise the user's role to target_role if, at write time, it ranks below it.
    
    The rank condition is part of the UPDATE, so concurrent upgraders and a
    later, higher purchase can never be overwritten by a lower one.
    
    Returns:
        True if the role changed
    """
    target = to_role(target_role)
    updated = db.query(User).filter(
        User.id == user_id,
        User.role.in_(roles_below(target)),
    ).update(
        {User.role: target.value, User.updated_at: datetime.now(timezone.utc)},
        synchronize_session=False,
    )
    db.commit()
    return updated == 1
