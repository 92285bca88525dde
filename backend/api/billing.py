"""
Billing API routes.

Surface:
- GET  /api/billing/tokens/balance: Token balance
- GET  /api/billing/tokens/history: Ledger entries, newest first
- POST /api/billing/tokens/purchase: One-time charge for tokens
- GET  /api/billing/tokens/callback: Credit a confirmed purchase
- POST /api/billing/subscribe: Plan subscription (optionally ending the trial)
- GET  /api/billing/callback: Apply a confirmed plan change
- POST /api/billing/activate: End the trial to unlock included tokens
- GET  /api/billing/info: Subscription, tokens, plans and feature availability
- POST /api/billing/check-feature-access: Entitlement decision for a feature
"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from backend.api.dependencies import get_billing_provider, shop_param
from backend.core.config import settings
from backend.core.errors import AppError
from backend.features.billing.provider import BillingProvider, BillingProviderError
from backend.features.billing.service import (
    complete_token_purchase,
    confirm_subscription,
    get_billing_info,
    start_activation,
    start_subscription,
    start_token_purchase,
)
from backend.features.entitlements.service import check_entitlement, entitlement_error_payload
from backend.features.shops.service import normalize_shop, require_shop
from backend.features.tokens import ledger


router = APIRouter(prefix="/billing", tags=["billing"])


class BillingGatewayError(AppError):
    code = "billing_provider_error"
    status_code = 502


class ShopRequest(BaseModel):
    shop: str


class PurchaseRequest(BaseModel):
    """Token purchase in whole dollars (5..1000, multiples of 5)."""
    shop: str
    amount: float


class SubscribeRequest(BaseModel):
    shop: str
    plan: str
    endTrial: bool = False


class FeatureAccessRequest(BaseModel):
    shop: str
    feature: str
    workloadSize: Optional[int] = Field(default=None, ge=0)


class ConfirmationResponse(BaseModel):
    confirmationUrl: Optional[str]


class BalanceResponse(BaseModel):
    balance: int
    totalPurchased: int
    totalUsed: int


class HistoryResponse(BaseModel):
    entries: List[Dict[str, Any]]


def _provider_call(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except BillingProviderError as e:
        raise BillingGatewayError(str(e))


@router.get("/tokens/balance", response_model=BalanceResponse)
def token_balance(shop: str = Depends(shop_param)):
    """Current balance; zeros for a shop with no ledger activity."""
    return ledger.balance(shop)


@router.get("/tokens/history", response_model=HistoryResponse)
def token_history(shop: str = Depends(shop_param), limit: int = Query(50, ge=1, le=500)):
    return {"entries": ledger.history(shop, limit=limit)}


@router.post("/tokens/purchase")
def purchase_tokens(
    request: PurchaseRequest,
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    """
    Start a token purchase.

    Returns:
        {"confirmationUrl", "purchaseId", "amount", "tokens"}

    Errors:
        400: amount outside 5..1000 or not a multiple of 5
        404: shop not installed
        502: Shopify rejected the charge
        503: billing not configured
    """
    shop = normalize_shop(request.shop)
    return _provider_call(start_token_purchase, shop, request.amount, provider=provider)


@router.get("/tokens/callback")
def token_purchase_callback(
    shop: str = Depends(shop_param),
    purchase_id: int = Query(...),
    redirect: bool = Query(False),
):
    """Merchant returns here after approving the charge. Safe to call repeatedly."""
    result = complete_token_purchase(shop, purchase_id)
    if redirect:
        return RedirectResponse(f"{settings.APP_URL.rstrip('/')}/billing?shop={shop}&purchased=1")
    return result


@router.post("/subscribe", response_model=ConfirmationResponse)
def subscribe(
    request: SubscribeRequest,
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    """
    Subscribe to a plan. With endTrial the charge starts without trial days
    and the plan activates on confirmation.

    Errors:
        400: unknown plan
        404: shop not installed
        503: billing not configured
    """
    shop = normalize_shop(request.shop)
    return _provider_call(start_subscription, shop, request.plan, end_trial=request.endTrial, provider=provider)


@router.get("/callback")
def subscription_callback(shop: str = Depends(shop_param)):
    """Apply the plan the merchant just approved."""
    return confirm_subscription(shop)


@router.post("/activate")
def activate(
    request: ShopRequest,
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    """End the trial of the current plan; included tokens are credited on confirmation."""
    shop = normalize_shop(request.shop)
    return _provider_call(start_activation, shop, provider=provider)


@router.get("/info")
def billing_info(shop: str = Depends(shop_param)):
    return get_billing_info(shop)


@router.post("/check-feature-access")
def check_feature_access(request: FeatureAccessRequest):
    """
    Entitlement decision for a feature.

    Plan, trial and token denials answer 402 with the purchase/activation
    payload; content preconditions answer 200 with their code.
    """
    shop = require_shop(normalize_shop(request.shop))
    decision = check_entitlement(shop, request.feature, workload_size=request.workloadSize)
    body = decision.to_dict()
    if decision.requires_payment:
        body.update(entitlement_error_payload(decision))
        return JSONResponse(status_code=402, content=body)
    return body
