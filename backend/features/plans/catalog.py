"""
backend/features/plans/catalog.py

Ordered plan catalog and rank resolution.

Handles:
- Plan name normalization ("Growth Extra", "growth-extra", " growth_extra ")
- Rank lookup (unknown or empty names resolve to the lowest rank)
- "At least X" comparisons
- Strict resolution for billing actions that must reject unknown plans
"""

import re
from decimal import Decimal
from typing import Dict, List, Optional

from backend.core.errors import ValidationError
from backend.models.plan import Plan


# Ordered lowest to highest; position is the rank
PLAN_ORDER: List[str] = [
    "starter",
    "professional",
    "professional_plus",
    "growth",
    "growth_plus",
    "growth_extra",
    "enterprise",
]

_PLAN_DETAILS = {
    "starter": ("Starter", Decimal("10"), Decimal("0")),
    "professional": ("Professional", Decimal("39"), Decimal("0")),
    "professional_plus": ("Professional Plus", Decimal("39"), Decimal("0")),
    "growth": ("Growth", Decimal("59"), Decimal("0")),
    "growth_plus": ("Growth Plus", Decimal("59"), Decimal("0")),
    "growth_extra": ("Growth Extra", Decimal("119"), Decimal("35.70")),
    "enterprise": ("Enterprise", Decimal("299"), Decimal("89.70")),
}

PLANS: Dict[str, Plan] = {
    key: Plan(
        key=key,
        name=_PLAN_DETAILS[key][0],
        rank=index,
        monthly_price_usd=_PLAN_DETAILS[key][1],
        included_tokens_usd=_PLAN_DETAILS[key][2],
        requires_activation_for_tokens=_PLAN_DETAILS[key][2] > 0,
    )
    for index, key in enumerate(PLAN_ORDER)
}

LOWEST_RANK = 0

_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_plan(plan_name: Optional[str]) -> str:
    """Lower-case, trim and collapse separators to a single underscore."""
    if not plan_name:
        return ""
    return _SEPARATORS.sub("_", str(plan_name).strip().lower()).strip("_")


def rank(plan_name: Optional[str]) -> int:
    """Rank of a plan in the catalog; unknown input is the most restrictive tier."""
    key = normalize_plan(plan_name)
    plan = PLANS.get(key)
    return plan.rank if plan else LOWEST_RANK


def is_at_least(plan_name: Optional[str], required_rank: int) -> bool:
    return rank(plan_name) >= required_rank


def plan_for_rank(plan_rank: int) -> Plan:
    return PLANS[PLAN_ORDER[plan_rank]]


def get_plan(plan_name: Optional[str]) -> Plan:
    """Lenient lookup: unknown names fall back to the lowest tier."""
    return plan_for_rank(rank(plan_name))


def resolve_plan(plan_name: Optional[str]) -> Plan:
    """Strict lookup for billing actions.

    Raises:
        ValidationError: if the name does not match a catalog plan
    """
    key = normalize_plan(plan_name)
    if key not in PLANS:
        raise ValidationError(f"Unknown plan: {plan_name!r}", code="invalid_plan")
    return PLANS[key]


def plan_display_name(plan_name: Optional[str]) -> str:
    return get_plan(plan_name).name


def list_plans() -> List[dict]:
    return [
        {
            "key": plan.key,
            "name": plan.name,
            "rank": plan.rank,
            "priceUsd": float(plan.monthly_price_usd),
            "includedTokensUsd": float(plan.included_tokens_usd),
        }
        for plan in PLANS.values()
    ]
