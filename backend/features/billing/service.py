"""
Billing service orchestrator.

Coordinates:
- Plan subscriptions (subscribe, confirm, end trial)
- Token purchases (one-time charges credited on confirmation)
- Included token budgets granted per confirmed plan change
- Billing info for the settings screen

All Shopify-specific code is in shopify_provider.py.
"""
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from sqlalchemy import select, insert, update

from backend.core.config import settings
from backend.core.database import get_db_session, token_purchases
from backend.core.errors import BillingDisabledError, NotFoundError
from backend.core.timeutils import as_utc, utc_now
from backend.features.billing.included import grant_included_tokens, settle_expired_trial
from backend.features.billing.provider import BillingProvider, BillingProviderError
from backend.features.billing.shopify_provider import ShopifyBillingProvider
from backend.features.entitlements.service import feature_availability
from backend.features.billing.subscriptions import (
    confirm_pending_plan,
    get_subscription,
    set_pending_plan,
)
from backend.features.plans.catalog import list_plans, resolve_plan
from backend.features.plans.feature_table import FEATURE_TABLE_VERSION
from backend.features.shops.service import get_access_token, require_shop
from backend.features.tokens import ledger
from backend.features.tokens.pricing import calculate_tokens, pricing_summary, validate_purchase_amount

logger = logging.getLogger("aiseo")


def billing_enabled() -> bool:
    """Check if billing is enabled (Shopify app credentials configured)."""
    api_key = os.getenv("SHOPIFY_API_KEY") or settings.SHOPIFY_API_KEY
    return bool(settings.BILLING_ENABLED and api_key)


def _lookup_token(shop: str) -> Optional[str]:
    try:
        return get_access_token(shop)
    except NotFoundError:
        return None


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    return ShopifyBillingProvider(_lookup_token)


def _require_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    if provider is None:
        raise BillingDisabledError("Billing is not configured. Set SHOPIFY_API_KEY.")
    return provider


def _callback_url(path: str, **params: Any) -> str:
    return f"{settings.APP_URL.rstrip('/')}{path}?{urlencode(params)}"


def start_subscription(
    shop: str,
    plan: str,
    *,
    end_trial: bool = False,
    provider: Optional[BillingProvider],
) -> Dict[str, Any]:
    """
    Start a plan subscription; the merchant confirms on the returned URL.

    Raises:
        ValidationError: unknown plan
        BillingDisabledError: no provider configured
        BillingProviderError: the platform rejected the charge
    """
    provider = _require_provider(provider)
    target = resolve_plan(plan)
    sub = get_subscription(shop)

    trial_days = 0
    trial_ends = as_utc(sub.trial_ends_at)
    if not end_trial and not sub.activated and trial_ends is not None:
        trial_days = max(0, (trial_ends - utc_now()).days)

    charge = provider.create_subscription(
        shop,
        plan_name=target.name,
        price_usd=target.monthly_price_usd,
        trial_days=trial_days,
        return_url=_callback_url("/api/billing/callback", shop=shop),
        test=settings.BILLING_TEST_MODE,
    )
    set_pending_plan(shop, target.key, end_trial=end_trial, provider_subscription_id=charge.charge_id)
    return {"confirmationUrl": charge.confirmation_url, "plan": target.key, "trialDays": trial_days}


def start_activation(shop: str, *, provider: Optional[BillingProvider]) -> Dict[str, Any]:
    """End the trial of the current plan by re-subscribing without trial days."""
    sub = get_subscription(shop)
    if sub.activated:
        return {"activated": True, "confirmationUrl": None, "plan": sub.plan}
    result = start_subscription(shop, sub.plan, end_trial=True, provider=provider)
    result["activated"] = False
    return result


def confirm_subscription(shop: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Apply the pending plan after merchant approval.

    Every confirmed plan change of an activated subscription grants the new
    plan's included tokens; a subscription still in trial gets them when the
    trial ends.
    """
    sub = confirm_pending_plan(shop, now=now)
    granted = grant_included_tokens(sub) if sub.activated else 0
    logger.info(
        "[billing] subscription confirmed",
        extra={"shop": shop, "plan": sub.plan, "activated": sub.activated, "granted": granted},
    )
    return {"plan": sub.plan, "activated": sub.activated, "includedTokensGranted": granted}


def start_token_purchase(shop: str, amount, *, provider: Optional[BillingProvider]) -> Dict[str, Any]:
    """
    Create a one-time charge for a token purchase.

    Raises:
        ValidationError: amount outside 5..1000 or not a multiple of 5
        BillingDisabledError: no provider configured
    """
    usd = validate_purchase_amount(amount)
    provider = _require_provider(provider)
    require_shop(shop)
    tokens = calculate_tokens(usd)

    with get_db_session() as session:
        result = session.execute(
            insert(token_purchases).values(
                shop=shop,
                charge_id=f"pending:{shop}:{utc_now().timestamp()}",
                usd_amount=usd,
                tokens=tokens,
                status="pending",
            )
        )
        purchase_id = result.inserted_primary_key[0]

    try:
        charge = provider.create_one_time_charge(
            shop,
            name=f"AI tokens (${usd})",
            price_usd=usd,
            return_url=_callback_url("/api/billing/tokens/callback", shop=shop, purchase_id=purchase_id),
            test=settings.BILLING_TEST_MODE,
        )
    except BillingProviderError:
        with get_db_session() as session:
            session.execute(
                update(token_purchases)
                .where(token_purchases.c.id == purchase_id)
                .values(status="failed")
            )
        raise
    with get_db_session() as session:
        session.execute(
            update(token_purchases)
            .where(token_purchases.c.id == purchase_id)
            .values(charge_id=charge.charge_id)
        )

    logger.info("[billing] token purchase started", extra={"shop": shop, "amount": str(usd), "tokens": tokens})
    return {
        "confirmationUrl": charge.confirmation_url,
        "purchaseId": purchase_id,
        "amount": float(usd),
        "tokens": tokens,
    }


def complete_token_purchase(shop: str, purchase_id: int) -> Dict[str, Any]:
    """Credit a confirmed purchase exactly once.

    Raises:
        NotFoundError: no such purchase for this shop
    """
    with get_db_session() as session:
        row = session.execute(
            select(token_purchases).where(
                token_purchases.c.id == purchase_id,
                token_purchases.c.shop == shop,
            )
        ).fetchone()
        if not row:
            raise NotFoundError(f"Token purchase {purchase_id} not found", code="purchase_not_found")

        claimed = session.execute(
            update(token_purchases)
            .where(token_purchases.c.id == purchase_id, token_purchases.c.status == "pending")
            .values(status="completed", completed_at=utc_now())
        ).rowcount == 1

        if claimed:
            current = ledger.credit(
                shop,
                int(row.tokens),
                reason="purchase",
                reference=row.charge_id,
                metadata={"usd": str(row.usd_amount)},
                session=session,
            )
        else:
            current = ledger.get_balance(shop, session=session)

    return {"credited": claimed, "tokens": int(row.tokens), **current.to_public()}


def get_billing_info(shop: str) -> Dict[str, Any]:
    now = utc_now()
    sub = settle_expired_trial(get_subscription(shop), now=now)
    return {
        "shop": shop,
        "subscription": sub.to_public(now),
        "tokens": ledger.balance(shop),
        "plans": list_plans(),
        "tokenPricing": pricing_summary(),
        "features": feature_availability(shop),
        "featureTableVersion": FEATURE_TABLE_VERSION,
        "billingEnabled": billing_enabled(),
    }
