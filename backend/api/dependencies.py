"""
Shared FastAPI dependencies.

Tests override get_dispatcher and get_billing_provider through
app.dependency_overrides.
"""
from typing import Optional

from fastapi import Query

from backend.features.billing.provider import BillingProvider
from backend.features.billing.service import get_provider
from backend.features.jobs.queue import JobDispatcher
from backend.features.shops.service import normalize_shop

_dispatcher: Optional[JobDispatcher] = None


def shop_param(shop: Optional[str] = Query(None)) -> str:
    """Validated ``?shop=`` query parameter."""
    return normalize_shop(shop)


def get_dispatcher() -> JobDispatcher:
    global _dispatcher
    if _dispatcher is None:
        from backend.queue_client import RQDispatcher

        _dispatcher = RQDispatcher()
    return _dispatcher


def get_billing_provider() -> Optional[BillingProvider]:
    return get_provider()
