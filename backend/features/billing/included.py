"""
Included token budgets of the higher plans.

A plan's included budget is credited once per confirmed charge, and only
after the trial is over: right away when the confirmed subscription is
activated, otherwise the first time the shop is checked after its trial ran
out.
"""

import logging
from datetime import datetime
from typing import Optional

from backend.core.timeutils import as_utc, utc_now
from backend.features.billing.subscriptions import end_trial
from backend.features.plans.catalog import get_plan
from backend.features.tokens import ledger
from backend.features.tokens.pricing import calculate_tokens
from backend.models.subscription import Subscription

logger = logging.getLogger("aiseo")


def included_reference(plan_key: str, charge_id: Optional[str]) -> str:
    # Shops that never went through a charge are keyed on their install
    return f"included:{plan_key}:{charge_id or 'install'}"


def grant_included_tokens(sub: Subscription) -> int:
    """Credit the included budget of the subscription's plan for its current charge.

    Idempotent per (plan, charge). Returns the tokens the plan includes, 0 for
    plans without a budget.
    """
    plan = get_plan(sub.plan)
    if plan.included_tokens_usd <= 0:
        return 0
    tokens = calculate_tokens(plan.included_tokens_usd)
    ledger.credit(
        sub.shop,
        tokens,
        reason="plan_included",
        reference=included_reference(plan.key, sub.provider_subscription_id),
        metadata={"plan": plan.key, "charge_id": sub.provider_subscription_id},
    )
    return tokens


def settle_expired_trial(sub: Subscription, *, now: Optional[datetime] = None) -> Subscription:
    """Activate a subscription whose trial ran out and grant its included budget.

    Subscriptions that are activated, still in trial or never had one are
    returned unchanged.
    """
    current = now or utc_now()
    trial_ends = as_utc(sub.trial_ends_at)
    if sub.activated or trial_ends is None or as_utc(current) < trial_ends:
        return sub
    settled = end_trial(sub.shop, now=trial_ends)
    granted = grant_included_tokens(settled)
    logger.info(
        "[billing] trial expired",
        extra={"shop": sub.shop, "plan": settled.plan, "granted": granted},
    )
    return settled
