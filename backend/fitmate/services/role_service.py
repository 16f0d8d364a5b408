"""Role ranking - the single upgrade predicate used at checkout and at settlement"""
import logging
from typing import List, Union

from fitmate.models.enums import Role

logger = logging.getLogger(__name__)

# Staff roles sit far above the membership tiers so a purchase can never reach them
ROLE_RANK = {
    Role.USER: 0,
    Role.USER_BRONZE: 1,
    Role.USER_GOLD: 2,
    Role.USER_PLATINUM: 3,
    Role.TRAINER: 99,
    Role.ADMIN: 100,
}

PURCHASABLE_ROLES = (Role.USER_BRONZE, Role.USER_GOLD, Role.USER_PLATINUM)


def to_role(value: Union[Role, str]) -> Role:
    """Coerce a stored role string to Role (raises ValueError if unknown)"""
    if isinstance(value, Role):
        return value
    return Role(value)


def role_rank(role: Union[Role, str]) -> int:
    return ROLE_RANK[to_role(role)]


def should_upgrade(current: Union[Role, str], target: Union[Role, str]) -> bool:
    """True only if target strictly outranks current (never a downgrade or a no-op)"""
    return role_rank(target) > role_rank(current)


def roles_below(target: Union[Role, str]) -> List[str]:
    """Stored values of every role that `target` would be an upgrade from"""
    return [role.value for role in Role if should_upgrade(role, target)]


def is_purchasable(role: Union[Role, str]) -> bool:
    try:
        return to_role(role) in PURCHASABLE_ROLES
    except ValueError:
        return False
