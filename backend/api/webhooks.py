"""
Shopify webhook routes.

- POST /api/webhooks/app-uninstalled: delete the shop and everything it owns
"""
import json
import logging
import os
from typing import Optional

from fastapi import APIRouter, Header, Request

from backend.core.config import settings
from backend.core.errors import PermissionError, ValidationError
from backend.features.shops.service import uninstall_shop
from backend.features.shops.webhooks import verify_webhook_hmac


logger = logging.getLogger("aiseo")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _app_secret() -> Optional[str]:
    return os.getenv("SHOPIFY_API_SECRET") or settings.SHOPIFY_API_SECRET


@router.post("/app-uninstalled")
async def app_uninstalled(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    x_shopify_shop_domain: Optional[str] = Header(None),
):
    """
    Handle app/uninstalled.

    Errors:
        403: missing or invalid HMAC
        400: no shop in header or body
    """
    # Raw body is required for signature verification
    body = await request.body()
    if not verify_webhook_hmac(body, x_shopify_hmac_sha256, _app_secret()):
        logger.warning("[webhooks] invalid hmac", extra={"shop": x_shopify_shop_domain})
        raise PermissionError("Invalid webhook signature", code="invalid_hmac")

    shop = x_shopify_shop_domain
    if not shop and body:
        try:
            shop = json.loads(body).get("myshopify_domain")
        except (ValueError, AttributeError):
            shop = None
    if not shop:
        raise ValidationError("Missing shop domain", code="missing_shop")

    result = uninstall_shop(shop)
    return {"received": True, **result}
