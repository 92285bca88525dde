# backend/conftest.py
import os
from datetime import timedelta
from typing import Optional

import pytest

from backend.core.database import get_engine, init_engine, reset_database
from backend.core.timeutils import utc_now


@pytest.fixture(scope="function", autouse=True)
def sqlite_db(tmp_path, monkeypatch):
    """
    Fresh file-backed SQLite database per test.

    File-backed (not :memory:) so worker threads in concurrency tests share it.
    """
    url = f"sqlite:///{tmp_path / 'test.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    init_engine(url)
    reset_database()
    yield url
    get_engine().dispose()


@pytest.fixture
def make_shop():
    """
    Install a shop in a given billing state.

    Usage:
        shop = make_shop("growth_plus", balance=1000)
        shop = make_shop("enterprise", in_trial=True, products=10, ai_optimized=10)
    """
    from backend.features.billing.subscriptions import end_trial
    from backend.features.shops.service import CatalogStats, install_shop, update_catalog_stats
    from backend.features.tokens import ledger

    counter = {"n": 0}

    def _make(
        plan: str = "starter",
        *,
        shop: Optional[str] = None,
        in_trial: bool = False,
        balance: int = 0,
        products: int = 0,
        collections: int = 0,
        ai_optimized: int = 0,
        basic_seo: int = 0,
    ) -> str:
        counter["n"] += 1
        domain = shop or f"shop-{counter['n']}.myshopify.com"
        install_shop(domain, access_token="shpat_test", plan=plan, now=utc_now() - timedelta(hours=1))
        if not in_trial:
            end_trial(domain)
        if balance:
            ledger.credit(domain, balance, reason="test_seed", reference=f"seed:{domain}")
        if products or collections or ai_optimized or basic_seo:
            update_catalog_stats(
                domain,
                CatalogStats(
                    product_count=products,
                    collection_count=collections,
                    ai_optimized_count=ai_optimized,
                    basic_seo_count=basic_seo,
                ),
            )
        return domain

    return _make


@pytest.fixture
def client():
    """TestClient with dependency overrides cleared afterwards."""
    from fastapi.testclient import TestClient
    from backend.main import app

    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def dispatcher(client):
    """Recording dispatcher wired into the app."""
    from backend.api.dependencies import get_dispatcher
    from backend.main import app
    from backend.tests.mocks import FakeDispatcher

    fake = FakeDispatcher()
    app.dependency_overrides[get_dispatcher] = lambda: fake
    return fake


@pytest.fixture
def billing_provider(client, monkeypatch):
    """Fake Shopify billing wired into the app."""
    from backend.api.dependencies import get_billing_provider
    from backend.main import app
    from backend.tests.mocks import FakeBillingProvider

    fake = FakeBillingProvider()
    app.dependency_overrides[get_billing_provider] = lambda: fake
    return fake


@pytest.fixture(autouse=True)
def _shopify_secret(monkeypatch):
    monkeypatch.setenv("SHOPIFY_API_SECRET", os.getenv("SHOPIFY_API_SECRET", "test-secret"))
