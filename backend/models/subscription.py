"""
backend/models/subscription.py

Subscription model: plan, trial and activation state of a shop.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from backend.core.timeutils import as_utc, iso


class Subscription(BaseModel):
    """
    Subscription belongs to exactly one shop.

    The plan rank is never stored; compare via the plan catalog.
    """
    model_config = ConfigDict(frozen=True)

    shop: str
    plan: str
    pending_plan: Optional[str] = None
    pending_end_trial: bool = False
    status: str = "active"
    trial_ends_at: Optional[datetime] = None
    activated: bool = False
    activated_at: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None

    def in_trial(self, now: datetime) -> bool:
        """True while an un-activated trial is running."""
        ends = as_utc(self.trial_ends_at)
        return not self.activated and ends is not None and as_utc(now) < ends

    def to_public(self, now: datetime) -> dict:
        return {
            "plan": self.plan,
            "pendingPlan": self.pending_plan,
            "status": self.status,
            "trialEndsAt": iso(self.trial_ends_at),
            "inTrial": self.in_trial(now),
            "activated": self.activated,
            "activatedAt": iso(self.activated_at),
        }
