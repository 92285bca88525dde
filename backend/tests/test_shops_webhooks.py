"""
Tests for shop install, catalog stats and the app/uninstalled webhook.
"""
import json
import os

from sqlalchemy import func, select

from backend.core.database import (
    content_records,
    generation_jobs,
    get_db_session,
    shop_catalog_stats,
    shops,
    subscriptions,
    token_balances,
    token_ledger,
)
from backend.features.billing.subscriptions import get_subscription
from backend.features.jobs.content_store import record_generation
from backend.features.jobs.queue import enqueue_job
from backend.features.shops.service import get_catalog_stats
from backend.features.shops.webhooks import sign_webhook_body, verify_webhook_hmac
from backend.tests.mocks import FakeDispatcher


def _count(table, shop):
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table).where(table.c.shop == shop)).scalar()


class TestInstall:
    def test_install_starts_trial(self, client):
        resp = client.post("/api/shops/install", json={"shop": "New-Store.myshopify.com", "plan": "growth"})
        assert resp.json() == {"shop": "new-store.myshopify.com", "created": True}

        sub = get_subscription("new-store.myshopify.com")
        assert sub.plan == "growth"
        assert sub.trial_ends_at is not None
        assert sub.activated is False

    def test_install_is_idempotent(self, client, make_shop):
        shop = make_shop("enterprise", balance=500)
        resp = client.post("/api/shops/install", json={"shop": shop, "plan": "starter"})
        assert resp.json()["created"] is False
        assert get_subscription(shop).plan == "enterprise"
        assert _count(token_balances, shop) == 1

    def test_invalid_domain(self, client):
        resp = client.post("/api/shops/install", json={"shop": "https://evil.example.com"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_shop"


class TestCatalogStats:
    def test_put_stats(self, client, make_shop):
        shop = make_shop("growth")
        resp = client.put(
            "/api/shops/catalog-stats",
            json={"shop": shop, "productCount": 120, "aiOptimizedCount": 30},
        )
        assert resp.status_code == 200
        assert resp.json()["productCount"] == 120
        stats = get_catalog_stats(shop)
        assert stats.product_count == 120
        assert stats.ai_optimized_count == 30
        assert stats.collection_count == 0

    def test_negative_counts_rejected(self, client, make_shop):
        shop = make_shop("growth")
        resp = client.put("/api/shops/catalog-stats", json={"shop": shop, "productCount": -1})
        assert resp.status_code == 422

    def test_unknown_shop(self, client):
        resp = client.put("/api/shops/catalog-stats", json={"shop": "ghost.myshopify.com"})
        assert resp.status_code == 404


class TestWebhookSignature:
    def test_roundtrip(self):
        body = b'{"id": 1}'
        assert verify_webhook_hmac(body, sign_webhook_body(body, "s3cret"), "s3cret")

    def test_rejects_wrong_secret_or_missing_parts(self):
        body = b'{"id": 1}'
        signature = sign_webhook_body(body, "s3cret")
        assert not verify_webhook_hmac(body, signature, "other")
        assert not verify_webhook_hmac(body + b" ", signature, "s3cret")
        assert not verify_webhook_hmac(body, None, "s3cret")
        assert not verify_webhook_hmac(body, signature, None)


class TestAppUninstalled:
    def _post(self, client, shop, *, secret=None, signature=None, header_shop=True):
        secret = secret or os.environ["SHOPIFY_API_SECRET"]
        body = json.dumps({"myshopify_domain": shop}).encode()
        headers = {"Content-Type": "application/json"}
        if header_shop:
            headers["X-Shopify-Shop-Domain"] = shop
        headers["X-Shopify-Hmac-Sha256"] = signature or sign_webhook_body(body, secret)
        return client.post("/api/webhooks/app-uninstalled", content=body, headers=headers)

    def test_uninstall_cascades(self, client, make_shop):
        shop = make_shop("enterprise", balance=10_000, products=10, ai_optimized=10)
        enqueue_job(shop, "schema", dispatcher=FakeDispatcher())
        record_generation(shop, "sitemap")

        resp = self._post(client, shop)
        assert resp.status_code == 200
        assert resp.json()["received"] is True
        assert resp.json()["deleted"] is True

        for table in (shops, subscriptions, token_balances, token_ledger,
                      generation_jobs, content_records, shop_catalog_stats):
            assert _count(table, shop) == 0, table.name

        status = client.get("/api/schema/status", params={"shop": shop})
        assert status.status_code == 404

    def test_shop_from_body(self, client, make_shop):
        shop = make_shop("growth")
        resp = self._post(client, shop, header_shop=False)
        assert resp.json()["shop"] == shop
        assert _count(shops, shop) == 0

    def test_unknown_shop_is_acknowledged(self, client):
        resp = self._post(client, "gone.myshopify.com")
        assert resp.status_code == 200
        assert resp.json()["deleted"] is False

    def test_bad_signature(self, client, make_shop):
        shop = make_shop("growth")
        resp = self._post(client, shop, secret="wrong")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "invalid_hmac"
        assert _count(shops, shop) == 1

    def test_missing_signature(self, client, make_shop):
        shop = make_shop("growth")
        resp = client.post(
            "/api/webhooks/app-uninstalled",
            content=b"{}",
            headers={"X-Shopify-Shop-Domain": shop},
        )
        assert resp.status_code == 403
