"""
backend/features/shops/service.py

Shop lifecycle service.

Handles:
- Install (shop row + default subscription + zero token balance)
- Uninstall (cascade delete of every child record in one transaction)
- Catalog stats synced from the storefront (workload size, content readiness)
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import select, insert, update, delete
from sqlalchemy.orm import Session

from backend.core.config import settings
from backend.core.database import (
    session_scope,
    shops,
    subscriptions,
    token_balances,
    token_ledger,
    token_purchases,
    generation_jobs,
    content_records,
    shop_catalog_stats,
)
from backend.core.errors import NotFoundError, ValidationError
from backend.core.timeutils import utc_now
from backend.features.plans.catalog import PLAN_ORDER, resolve_plan
from backend.features.tokens.ledger import ensure_balance_row

logger = logging.getLogger("aiseo")

_SHOP_DOMAIN = re.compile(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$")

# Child tables removed on uninstall, children before parents
_CHILD_TABLES = (
    generation_jobs,
    content_records,
    token_ledger,
    token_purchases,
    token_balances,
    shop_catalog_stats,
    subscriptions,
)


@dataclass(frozen=True)
class CatalogStats:
    product_count: int = 0
    collection_count: int = 0
    ai_optimized_count: int = 0
    basic_seo_count: int = 0


def normalize_shop(shop: Optional[str]) -> str:
    """Validate and lower-case a myshopify domain.

    Raises:
        ValidationError: missing or malformed shop parameter
    """
    value = (shop or "").strip().lower()
    if not value:
        raise ValidationError("Missing shop parameter", code="missing_shop")
    if not _SHOP_DOMAIN.match(value):
        raise ValidationError(f"Invalid shop domain: {shop!r}", code="invalid_shop")
    return value


def shop_exists(shop: str, *, session: Optional[Session] = None) -> bool:
    with session_scope(session) as db:
        return db.execute(select(shops.c.shop).where(shops.c.shop == shop)).fetchone() is not None


def require_shop(shop: str, *, session: Optional[Session] = None) -> str:
    if not shop_exists(shop, session=session):
        raise NotFoundError(f"Shop not installed: {shop}", code="shop_not_found")
    return shop


def get_access_token(shop: str) -> Optional[str]:
    with session_scope() as db:
        row = db.execute(select(shops.c.access_token).where(shops.c.shop == shop)).fetchone()
    if not row:
        raise NotFoundError(f"Shop not installed: {shop}", code="shop_not_found")
    return row.access_token


def install_shop(
    shop: str,
    *,
    access_token: Optional[str] = None,
    plan: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Create or refresh a shop. Idempotent; an existing subscription is kept.

    New shops start on the given plan (default: lowest tier) with a trial of
    TRIAL_DAYS days.
    """
    shop = normalize_shop(shop)
    plan_key = resolve_plan(plan).key if plan else PLAN_ORDER[0]
    current = now or utc_now()

    with session_scope() as db:
        existing = db.execute(select(shops.c.shop).where(shops.c.shop == shop)).fetchone()
        if existing:
            if access_token:
                db.execute(update(shops).where(shops.c.shop == shop).values(access_token=access_token))
            created = False
        else:
            db.execute(insert(shops).values(shop=shop, access_token=access_token))
            created = True

        has_subscription = db.execute(
            select(subscriptions.c.shop).where(subscriptions.c.shop == shop)
        ).fetchone()
        if not has_subscription:
            trial_days = settings.TRIAL_DAYS
            db.execute(
                insert(subscriptions).values(
                    shop=shop,
                    plan=plan_key,
                    status="active",
                    trial_ends_at=current + timedelta(days=trial_days) if trial_days > 0 else None,
                    activated=trial_days <= 0,
                    activated_at=current if trial_days <= 0 else None,
                )
            )
        ensure_balance_row(db, shop)

    logger.info(f"[shops] installed {shop}", extra={"shop": shop, "new_shop": created, "plan": plan_key})
    return {"shop": shop, "created": created}


def uninstall_shop(shop: str) -> Dict[str, object]:
    """Delete a shop and everything it owns.

    Jobs still queued in Redis find no slot row and are skipped by the worker.
    After a reinstall slot versions start over at 1, so a leftover pickup can
    match the new shop's first claim. It then runs that paid claim, and the
    claim's own pickup finds the version moved on and is skipped: the job
    still runs once.
    """
    shop = normalize_shop(shop)
    removed: Dict[str, int] = {}
    with session_scope() as db:
        for table in _CHILD_TABLES:
            result = db.execute(delete(table).where(table.c.shop == shop))
            removed[table.name] = result.rowcount or 0
        result = db.execute(delete(shops).where(shops.c.shop == shop))
        removed[shops.name] = result.rowcount or 0

    logger.info(f"[shops] uninstalled {shop}", extra={"shop": shop, "removed": removed})
    return {"shop": shop, "deleted": removed[shops.name] > 0, "removed": removed}


def update_catalog_stats(shop: str, stats: CatalogStats) -> CatalogStats:
    """Store counts reported by the product sync."""
    with session_scope() as db:
        require_shop(shop, session=db)
        values = dict(
            product_count=stats.product_count,
            collection_count=stats.collection_count,
            ai_optimized_count=stats.ai_optimized_count,
            basic_seo_count=stats.basic_seo_count,
            synced_at=utc_now(),
        )
        result = db.execute(
            update(shop_catalog_stats).where(shop_catalog_stats.c.shop == shop).values(**values)
        )
        if result.rowcount == 0:
            db.execute(insert(shop_catalog_stats).values(shop=shop, **values))
    return stats


def get_catalog_stats(shop: str, *, session: Optional[Session] = None) -> CatalogStats:
    with session_scope(session) as db:
        row = db.execute(
            select(shop_catalog_stats).where(shop_catalog_stats.c.shop == shop)
        ).fetchone()
    if not row:
        return CatalogStats()
    return CatalogStats(
        product_count=row.product_count,
        collection_count=row.collection_count,
        ai_optimized_count=row.ai_optimized_count,
        basic_seo_count=row.basic_seo_count,
    )
