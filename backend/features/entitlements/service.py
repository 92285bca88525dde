"""
backend/features/entitlements/service.py

Feature entitlement resolver.

Decides, for a (shop, feature) pair, whether the feature may run and what it
costs. Checks are layered plan -> trial -> tokens -> content precondition;
plan and trial checks short-circuit before any balance read or catalog I/O.

Handles:
- Decisions for the enforcement path (generate endpoints, job enqueue)
- Feature availability for the display path (billing info)
- The 402 payload returned to the embedded app
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import logging

from backend.core.errors import EntitlementDeniedError
from backend.core.timeutils import iso, utc_now
from backend.features.billing.included import settle_expired_trial
from backend.features.billing.subscriptions import find_subscription
from backend.features.plans.catalog import get_plan, is_at_least, rank
from backend.features.plans.feature_table import (
    FEATURE_TABLE,
    Precondition,
    WorkloadUnit,
    access_mode,
    get_rule,
)
from backend.features.shops.service import CatalogStats, get_catalog_stats
from backend.features.tokens.estimator import TokenEstimate, estimate
from backend.features.tokens.ledger import get_balance


logger = logging.getLogger("aiseo")


class EntitlementReason(str, Enum):
    """Outcome of an entitlement check."""
    ALLOWED = "ALLOWED"
    DENIED_PLAN = "DENIED_PLAN"
    DENIED_TRIAL = "DENIED_TRIAL"
    DENIED_TOKENS = "DENIED_TOKENS"
    DENIED_PRECONDITION = "DENIED_PRECONDITION"
    WARN_BASIC_ONLY = "WARN_BASIC_ONLY"


TRIAL_RESTRICTION = "TRIAL_RESTRICTION"
INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
PLAN_UPGRADE_REQUIRED = "PLAN_UPGRADE_REQUIRED"
NO_OPTIMIZED_PRODUCTS = "NO_OPTIMIZED_PRODUCTS"
ONLY_BASIC_SEO = "ONLY_BASIC_SEO"

_ERROR_CODES = {
    EntitlementReason.DENIED_PLAN: PLAN_UPGRADE_REQUIRED,
    EntitlementReason.DENIED_TRIAL: TRIAL_RESTRICTION,
    EntitlementReason.DENIED_TOKENS: INSUFFICIENT_TOKENS,
    EntitlementReason.DENIED_PRECONDITION: NO_OPTIMIZED_PRODUCTS,
    EntitlementReason.WARN_BASIC_ONLY: ONLY_BASIC_SEO,
}

_MESSAGES = {
    EntitlementReason.DENIED_PLAN: "Your plan does not include this feature. Upgrade to continue.",
    EntitlementReason.DENIED_TRIAL: "Activate your plan to use AI tokens during the trial.",
    EntitlementReason.DENIED_TOKENS: "Not enough tokens. Purchase more tokens to continue.",
    EntitlementReason.DENIED_PRECONDITION: "No optimized products found. Optimize products first.",
    EntitlementReason.WARN_BASIC_ONLY: "Only basic SEO content found. AI-enhanced products give better results.",
}

# Reasons that surface as HTTP 402
PAYMENT_REASONS = frozenset({
    EntitlementReason.DENIED_PLAN,
    EntitlementReason.DENIED_TRIAL,
    EntitlementReason.DENIED_TOKENS,
})


@dataclass(frozen=True)
class FeatureEntitlementDecision:
    feature: str
    allowed: bool
    reason: EntitlementReason
    current_plan: str
    tokens_required: int = 0
    tokens_available: Optional[int] = None
    minimum_plan: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    workload_size: int = 0

    @property
    def tokens_needed(self) -> int:
        if self.tokens_available is None:
            return 0
        return max(0, self.tokens_required - self.tokens_available)

    @property
    def error_code(self) -> Optional[str]:
        return _ERROR_CODES.get(self.reason)

    @property
    def message(self) -> str:
        return _MESSAGES.get(self.reason, "Allowed")

    @property
    def requires_payment(self) -> bool:
        return self.reason in PAYMENT_REASONS

    @property
    def can_proceed_anyway(self) -> bool:
        return self.reason == EntitlementReason.WARN_BASIC_ONLY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "allowed": self.allowed,
            "reason": self.reason.value,
            "error": self.error_code,
            "currentPlan": self.current_plan,
            "minimumPlan": self.minimum_plan,
            "tokensRequired": self.tokens_required,
            "tokensAvailable": self.tokens_available,
            "tokensNeeded": self.tokens_needed,
            "workloadSize": self.workload_size,
            "trialEndsAt": iso(self.trial_ends_at),
            "canProceedAnyway": self.can_proceed_anyway,
        }


def _workload_for(unit: WorkloadUnit, stats: CatalogStats) -> int:
    if unit == WorkloadUnit.PRODUCTS:
        return stats.product_count
    if unit == WorkloadUnit.COLLECTIONS:
        return stats.collection_count
    return 0


def _log_decision(shop: str, decision: FeatureEntitlementDecision) -> None:
    level = logging.INFO if decision.allowed else logging.WARNING
    logger.log(
        level,
        f"[entitlement] {decision.reason.value}",
        extra={
            "shop": shop,
            "feature": decision.feature,
            "plan": decision.current_plan,
            "tokens_required": decision.tokens_required,
            "tokens_available": decision.tokens_available,
        },
    )


def _check_precondition(
    rule_precondition: Precondition,
    stats: CatalogStats,
    force_basic_seo: bool,
) -> Optional[EntitlementReason]:
    if rule_precondition != Precondition.AI_OPTIMIZED_PRODUCTS:
        return None
    if stats.ai_optimized_count > 0:
        return None
    if stats.basic_seo_count > 0:
        return None if force_basic_seo else EntitlementReason.WARN_BASIC_ONLY
    return EntitlementReason.DENIED_PRECONDITION


def check_entitlement(
    shop: str,
    feature,
    *,
    workload_size: Optional[int] = None,
    force_basic_seo: bool = False,
    now: Optional[datetime] = None,
) -> FeatureEntitlementDecision:
    """
    Decide whether ``shop`` may run ``feature``.

    Args:
        shop: myshopify domain
        feature: feature key (``aiSitemap``) or Feature member
        workload_size: units to price; defaults to the synced catalog count
        force_basic_seo: accept basic (non-AI) content for the precondition
        now: clock override for trial checks

    Returns:
        FeatureEntitlementDecision. Never raises for denials; use
        raise_for_decision() on the enforcement path.

    Raises:
        ValidationError: unknown feature or negative workload
    """
    rule = get_rule(feature)
    current = now or utc_now()
    sub = find_subscription(shop)
    if sub is not None:
        sub = settle_expired_trial(sub, now=current)
    plan_key = get_plan(sub.plan if sub else None).key
    plan_rank = rank(plan_key)
    trial_ends_at = sub.trial_ends_at if sub else None
    base = dict(feature=rule.feature.value, current_plan=plan_key, trial_ends_at=trial_ends_at)

    if not is_at_least(plan_key, rule.minimum_rank):
        decision = FeatureEntitlementDecision(
            allowed=False,
            reason=EntitlementReason.DENIED_PLAN,
            minimum_plan=rule.minimum_plan,
            **base,
        )
        _log_decision(shop, decision)
        return decision

    tokens_required = 0
    tokens_available = None
    stats: Optional[CatalogStats] = None

    if rule.is_included(plan_rank):
        size = workload_size or 0
    elif rule.is_metered(plan_rank):
        if workload_size is None:
            stats = get_catalog_stats(shop)
            workload_size = _workload_for(rule.unit, stats)
        cost: TokenEstimate = estimate(rule.feature, workload_size)
        size = cost.workload_size
        tokens_required = cost.with_margin

        if sub is not None and get_plan(plan_key).requires_activation_for_tokens and sub.in_trial(current):
            # Balance is reported alongside so the caller also sees any shortfall
            decision = FeatureEntitlementDecision(
                allowed=False,
                reason=EntitlementReason.DENIED_TRIAL,
                tokens_required=tokens_required,
                tokens_available=get_balance(shop).balance,
                workload_size=size,
                **base,
            )
            _log_decision(shop, decision)
            return decision

        tokens_available = get_balance(shop).balance
        if tokens_available < tokens_required:
            decision = FeatureEntitlementDecision(
                allowed=False,
                reason=EntitlementReason.DENIED_TOKENS,
                tokens_required=tokens_required,
                tokens_available=tokens_available,
                workload_size=size,
                **base,
            )
            _log_decision(shop, decision)
            return decision
    else:
        # At or above the minimum tier but in a gap that neither includes nor meters it
        decision = FeatureEntitlementDecision(
            allowed=False,
            reason=EntitlementReason.DENIED_PLAN,
            minimum_plan=rule.lowest_granting_plan(above_rank=plan_rank),
            **base,
        )
        _log_decision(shop, decision)
        return decision

    if rule.precondition != Precondition.NONE:
        stats = stats or get_catalog_stats(shop)
        blocked = _check_precondition(rule.precondition, stats, force_basic_seo)
        if blocked is not None:
            decision = FeatureEntitlementDecision(
                allowed=False,
                reason=blocked,
                tokens_required=tokens_required,
                tokens_available=tokens_available,
                workload_size=size,
                **base,
            )
            _log_decision(shop, decision)
            return decision

    decision = FeatureEntitlementDecision(
        allowed=True,
        reason=EntitlementReason.ALLOWED,
        tokens_required=tokens_required,
        tokens_available=tokens_available,
        workload_size=size,
        **base,
    )
    _log_decision(shop, decision)
    return decision


def entitlement_error_payload(decision: FeatureEntitlementDecision) -> Dict[str, Any]:
    """Flat 402 body fields for a plan, trial or token denial."""
    return {
        "trialRestriction": decision.reason == EntitlementReason.DENIED_TRIAL,
        "requiresActivation": decision.reason == EntitlementReason.DENIED_TRIAL,
        "requiresPurchase": decision.reason == EntitlementReason.DENIED_TOKENS
        or (decision.reason == EntitlementReason.DENIED_TRIAL and decision.tokens_needed > 0),
        "requiresUpgrade": decision.reason == EntitlementReason.DENIED_PLAN,
        "tokensRequired": decision.tokens_required,
        "tokensAvailable": decision.tokens_available,
        "tokensNeeded": decision.tokens_needed,
        "currentPlan": decision.current_plan,
        "minimumPlanForFeature": decision.minimum_plan,
        "feature": decision.feature,
        "trialEndsAt": iso(decision.trial_ends_at),
        "error": decision.error_code,
    }


def raise_for_decision(decision: FeatureEntitlementDecision) -> None:
    """Raise EntitlementDeniedError (402) for plan, trial and token denials.

    Precondition outcomes are not raised; callers report them as a status code.
    """
    if not decision.requires_payment:
        return
    raise EntitlementDeniedError(
        decision.message,
        code=decision.error_code,
        decision=decision,
        payload=entitlement_error_payload(decision),
    )


def feature_availability(shop: str) -> Dict[str, Dict[str, Any]]:
    """Per-feature access and upfront estimate for the billing screen.

    Reads the same table and estimator as check_entitlement, so display and
    enforcement never disagree.
    """
    sub = find_subscription(shop)
    plan_key = get_plan(sub.plan if sub else None).key
    stats = get_catalog_stats(shop)
    result: Dict[str, Dict[str, Any]] = {}
    for feature, rule in FEATURE_TABLE.items():
        mode = access_mode(feature, plan_key)
        entry: Dict[str, Any] = {
            "access": mode,
            "minimumPlan": rule.minimum_plan,
            "includedPlan": rule.included_plan,
            "estimatedTokens": None,
        }
        if mode == "tokens":
            entry["estimatedTokens"] = estimate(feature, _workload_for(rule.unit, stats)).with_margin
        elif mode == "locked":
            entry["minimumPlan"] = rule.lowest_granting_plan(above_rank=rank(plan_key)) or rule.minimum_plan
        result[feature.value] = entry
    return result
