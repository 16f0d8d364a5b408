"""Membership plan registry: Stripe price ID -> role granted, expected amount and currency"""
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from fitmate.core.config import settings
from fitmate.models.enums import Role
from fitmate.services.errors import InvalidPlanConfigError
from fitmate.services.role_service import is_purchasable, role_rank, to_role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MembershipPlan:
    price_id: str
    role: Role
    amount: int  # Minor units, e.g. 49900 = 499.00 THB
    currency: str
    label: str

    @property
    def formatted(self) -> str:
        return f"{self.amount / 100:,.2f} {self.currency}"

    def to_dict(self) -> Dict:
        return {
            "priceId": self.price_id,
            "role": self.role.value,
            "amount": self.amount,
            "currency": self.currency,
            "label": self.label,
            "formatted": self.formatted,
        }


DEFAULT_PLANS = (
    MembershipPlan("price_1SHi6U3JFtC2WMSKhAQeq9c8", Role.USER_BRONZE, 49900, "THB", "Bronze 499"),
    MembershipPlan("price_1SHi5X3JFtC2WMSKqqCbjHoV", Role.USER_GOLD, 129900, "THB", "Gold 1299"),
    MembershipPlan("price_1SHi7b3JFtC2WMSKRkKDIGL0", Role.USER_PLATINUM, 299900, "THB", "Platinum 2999"),
)


def load_plans_file(path: str) -> List[MembershipPlan]:
    """
    Load plans from a JSON file shaped like:
        {"price_abc": {"role": "USER_GOLD", "amount": 129900, "currency": "THB", "label": "Gold"}}
    
    Raises:
        InvalidPlanConfigError: If the file is malformed or a plan grants a non-membership role
    """
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidPlanConfigError(f"Cannot read plan file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise InvalidPlanConfigError("Plan file must map price IDs to plan objects")

    plans = []
    for price_id, entry in raw.items():
        try:
            role = to_role(entry["role"])
            plan = MembershipPlan(
                price_id=price_id,
                role=role,
                amount=int(entry["amount"]),
                currency=str(entry.get("currency", settings.DEFAULT_CURRENCY)).upper(),
                label=entry.get("label", role.value),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidPlanConfigError(f"Invalid plan entry for {price_id}: {e}") from e
        if not is_purchasable(plan.role):
            raise InvalidPlanConfigError(f"Plan {price_id} grants non-purchasable role {plan.role.value}")
        plans.append(plan)
    return plans


class MembershipPlanRegistry:
    """
    Single source of truth for which role a price ID buys.
    Static: built-in plans unless MEMBERSHIP_PLANS_FILE points at an override.
    """
    _cache: Dict[str, MembershipPlan] = {}

    @classmethod
    def load(cls, plans: Optional[List[MembershipPlan]] = None):
        if plans is None:
            if settings.MEMBERSHIP_PLANS_FILE:
                plans = load_plans_file(settings.MEMBERSHIP_PLANS_FILE)
                logger.info(f"Loaded {len(plans)} membership plans from {settings.MEMBERSHIP_PLANS_FILE}")
            else:
                plans = list(DEFAULT_PLANS)
        cls._cache = {plan.price_id: plan for plan in plans}

    @classmethod
    def reset(cls):
        cls._cache = {}

    @classmethod
    def get(cls, price_id: str) -> Optional[MembershipPlan]:
        if not cls._cache:
            cls.load()
        return cls._cache.get(price_id)

    @classmethod
    def find_by_role(cls, role) -> Optional[MembershipPlan]:
        """Plan that grants `role` (used for the settlement-time amount cross-check)"""
        if not cls._cache:
            cls.load()
        try:
            role = to_role(role)
        except ValueError:
            return None
        for plan in cls._cache.values():
            if plan.role == role:
                return plan
        return None

    @classmethod
    def all_plans(cls) -> List[MembershipPlan]:
        if not cls._cache:
            cls.load()
        return sorted(cls._cache.values(), key=lambda p: role_rank(p.role))
