"""
Subscription state: plan, pending plan, trial and activation.

Subscriptions are created at install; billing actions move them through
pending -> active and end trials. The plan rank is never persisted.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from backend.core.database import session_scope, subscriptions
from backend.core.errors import NotFoundError, ValidationError
from backend.core.timeutils import utc_now
from backend.models.subscription import Subscription

logger = logging.getLogger("aiseo")


def _row_to_model(row) -> Subscription:
    return Subscription(
        shop=row.shop,
        plan=row.plan,
        pending_plan=row.pending_plan,
        pending_end_trial=bool(row.pending_end_trial),
        status=row.status,
        trial_ends_at=row.trial_ends_at,
        activated=bool(row.activated),
        activated_at=row.activated_at,
        provider_subscription_id=row.provider_subscription_id,
    )


def find_subscription(shop: str, *, session: Optional[Session] = None) -> Optional[Subscription]:
    with session_scope(session) as db:
        row = db.execute(select(subscriptions).where(subscriptions.c.shop == shop)).fetchone()
    return _row_to_model(row) if row else None


def get_subscription(shop: str, *, session: Optional[Session] = None) -> Subscription:
    """Raises NotFoundError when the shop has no subscription (not installed)."""
    sub = find_subscription(shop, session=session)
    if sub is None:
        raise NotFoundError(f"No subscription for shop: {shop}", code="subscription_not_found")
    return sub


def set_pending_plan(
    shop: str,
    plan_key: str,
    *,
    end_trial: bool = False,
    provider_subscription_id: Optional[str] = None,
) -> Subscription:
    """Record a plan change awaiting merchant confirmation.

    The trial keeps running until the charge is confirmed, even when the
    merchant asked to end it.
    """
    values = dict(
        pending_plan=plan_key,
        pending_end_trial=end_trial,
        status="pending",
        provider_subscription_id=provider_subscription_id,
    )
    with session_scope() as db:
        result = db.execute(update(subscriptions).where(subscriptions.c.shop == shop).values(**values))
        if result.rowcount == 0:
            raise NotFoundError(f"No subscription for shop: {shop}", code="subscription_not_found")
        sub = get_subscription(shop, session=db)
    logger.info(
        "[billing] plan change pending",
        extra={"shop": shop, "pending_plan": plan_key, "end_trial": end_trial},
    )
    return sub


def confirm_pending_plan(shop: str, *, now: Optional[datetime] = None) -> Subscription:
    """Apply the pending plan once the merchant approved the charge.

    A running trial is kept; a subscription whose trial was ended or has run
    out is activated.
    """
    current = now or utc_now()
    with session_scope() as db:
        sub = get_subscription(shop, session=db)
        if not sub.pending_plan:
            raise ValidationError("No pending plan to confirm", code="no_pending_plan")
        values = dict(plan=sub.pending_plan, pending_plan=None, pending_end_trial=False, status="active")
        if not sub.activated and (sub.pending_end_trial or not sub.in_trial(current)):
            values.update(trial_ends_at=None, activated=True, activated_at=current)
        db.execute(update(subscriptions).where(subscriptions.c.shop == shop).values(**values))
        updated = get_subscription(shop, session=db)
    logger.info("[billing] plan confirmed", extra={"shop": shop, "plan": updated.plan})
    return updated


def end_trial(shop: str, *, now: Optional[datetime] = None) -> Subscription:
    """Activate billing immediately; idempotent."""
    current = now or utc_now()
    with session_scope() as db:
        sub = get_subscription(shop, session=db)
        if not sub.activated:
            db.execute(
                update(subscriptions)
                .where(subscriptions.c.shop == shop)
                .values(trial_ends_at=None, activated=True, activated_at=current)
            )
        updated = get_subscription(shop, session=db)
    logger.info("[billing] trial ended", extra={"shop": shop, "plan": updated.plan})
    return updated
