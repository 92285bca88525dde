"""
Shop lifecycle routes.

- POST /api/shops/install: create or refresh a shop after OAuth
- PUT  /api/shops/catalog-stats: counts pushed by the product sync
"""
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from backend.features.shops.service import (
    CatalogStats,
    install_shop,
    normalize_shop,
    update_catalog_stats,
)


router = APIRouter(prefix="/shops", tags=["shops"])


class InstallRequest(BaseModel):
    shop: str
    accessToken: Optional[str] = None
    plan: Optional[str] = None


class CatalogStatsRequest(BaseModel):
    shop: str
    productCount: int = Field(0, ge=0)
    collectionCount: int = Field(0, ge=0)
    aiOptimizedCount: int = Field(0, ge=0)
    basicSeoCount: int = Field(0, ge=0)


@router.post("/install")
def install(request: InstallRequest):
    """Idempotent; an existing subscription and balance are kept."""
    return install_shop(request.shop, access_token=request.accessToken, plan=request.plan)


@router.put("/catalog-stats")
def put_catalog_stats(request: CatalogStatsRequest):
    shop = normalize_shop(request.shop)
    stats = update_catalog_stats(
        shop,
        CatalogStats(
            product_count=request.productCount,
            collection_count=request.collectionCount,
            ai_optimized_count=request.aiOptimizedCount,
            basic_seo_count=request.basicSeoCount,
        ),
    )
    return {
        "shop": shop,
        "productCount": stats.product_count,
        "collectionCount": stats.collection_count,
        "aiOptimizedCount": stats.ai_optimized_count,
        "basicSeoCount": stats.basic_seo_count,
    }
