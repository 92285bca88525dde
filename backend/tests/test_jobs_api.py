"""
API tests for the generate and status routes.
"""
import pytest

from backend.core.timeutils import utc_now
from backend.features.jobs import tracker
from backend.features.jobs.content_store import record_generation
from backend.features.tokens import ledger
from backend.main import app
from backend.api.dependencies import get_dispatcher
from backend.tests.mocks import FakeDispatcher


SCHEMA_COST = 6750  # (3000 + 10 * 150) * 1.5


def _generate_schema(client, shop, **body):
    return client.post("/api/schema/generate-all", params={"shop": shop}, json=body)


class TestGenerate:
    def test_queued_job_answers_202(self, client, dispatcher, make_shop):
        shop = make_shop("enterprise", balance=SCHEMA_COST, products=10, ai_optimized=10)
        resp = _generate_schema(client, shop)

        assert resp.status_code == 202
        body = resp.json()
        assert body["queued"] is True
        assert body["status"] == "queued"
        assert body["version"] == 1
        assert body["queue"] == {"position": 1, "estimatedTime": 60}
        assert body["tokensDebited"] == SCHEMA_COST
        assert dispatcher.dispatched == [(shop, "schema", 1)]
        assert ledger.balance(shop)["balance"] == 0

    def test_second_request_conflicts(self, client, dispatcher, make_shop):
        shop = make_shop("enterprise", balance=SCHEMA_COST * 2, products=10, ai_optimized=10)
        assert _generate_schema(client, shop).status_code == 202

        resp = _generate_schema(client, shop)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "job_in_progress"
        assert ledger.balance(shop)["balance"] == SCHEMA_COST
        assert len(dispatcher.dispatched) == 1

    def test_plan_denial(self, client, dispatcher, make_shop):
        shop = make_shop("professional", balance=1_000_000, products=10, ai_optimized=10)
        resp = _generate_schema(client, shop)

        assert resp.status_code == 402
        body = resp.json()
        assert body["error"]["code"] == "PLAN_UPGRADE_REQUIRED"
        assert body["requiresUpgrade"] is True
        assert body["minimumPlanForFeature"] == "enterprise"
        assert dispatcher.dispatched == []

    def test_trial_denial(self, client, dispatcher, make_shop):
        shop = make_shop("enterprise", in_trial=True, balance=SCHEMA_COST, products=10, ai_optimized=10)
        resp = _generate_schema(client, shop)

        assert resp.status_code == 402
        body = resp.json()
        assert body["error"]["code"] == "TRIAL_RESTRICTION"
        assert body["trialRestriction"] is True
        assert body["requiresActivation"] is True
        assert ledger.balance(shop)["balance"] == SCHEMA_COST

    def test_token_denial(self, client, dispatcher, make_shop):
        shop = make_shop("enterprise", balance=100, products=10, ai_optimized=10)
        resp = _generate_schema(client, shop)

        assert resp.status_code == 402
        body = resp.json()
        assert body["error"]["code"] == "INSUFFICIENT_TOKENS"
        assert body["tokensRequired"] == SCHEMA_COST
        assert body["tokensNeeded"] == SCHEMA_COST - 100
        assert tracker.get_status(shop, "schema").status == "idle"

    def test_basic_only_warns_then_can_be_forced(self, client, dispatcher, make_shop):
        shop = make_shop("enterprise", balance=SCHEMA_COST, products=10, basic_seo=10)

        warned = _generate_schema(client, shop)
        assert warned.status_code == 200
        assert warned.json()["queued"] is False
        assert warned.json()["error"] == "ONLY_BASIC_SEO"
        assert warned.json()["canProceedAnyway"] is True
        assert dispatcher.dispatched == []

        forced = _generate_schema(client, shop, forceBasicSeo=True)
        assert forced.status_code == 202
        assert tracker.get_job(shop, "schema")["force_basic_seo"]

    def test_no_optimized_products(self, client, dispatcher, make_shop):
        shop = make_shop("enterprise", balance=SCHEMA_COST, products=10)
        resp = _generate_schema(client, shop, forceBasicSeo=True)
        assert resp.status_code == 200
        assert resp.json()["error"] == "NO_OPTIMIZED_PRODUCTS"
        assert resp.json()["canProceedAnyway"] is False

    def test_dispatch_failure_refunds(self, client, make_shop):
        shop = make_shop("enterprise", balance=SCHEMA_COST, products=10, ai_optimized=10)
        app.dependency_overrides[get_dispatcher] = lambda: FakeDispatcher(fail=True)

        resp = _generate_schema(client, shop)
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "DISPATCH_FAILED"
        assert ledger.balance(shop)["balance"] == SCHEMA_COST

        status = client.get("/api/schema/status", params={"shop": shop}).json()
        assert status["status"] == "failed"
        assert status["error"] == "DISPATCH_FAILED"

    def test_sitemap_generate_without_body(self, client, dispatcher, make_shop):
        shop = make_shop("growth_extra", products=40)
        resp = client.post("/api/sitemap/generate", params={"shop": shop})
        assert resp.status_code == 202
        assert resp.json()["tokensDebited"] == 0

    def test_unknown_shop(self, client, dispatcher):
        resp = _generate_schema(client, "ghost.myshopify.com")
        assert resp.status_code == 404

    def test_missing_shop(self, client, dispatcher):
        resp = client.post("/api/sitemap/generate")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_shop"


class TestStatus:
    def test_idle(self, client, make_shop):
        shop = make_shop("enterprise")
        body = client.get("/api/schema/status", params={"shop": shop}).json()
        assert body["inProgress"] is False
        assert body["status"] == "idle"
        assert body["version"] == 0
        assert body["schema"] == {"generatedAt": None, "schemaCount": None}

    def test_queued_positions(self, client, dispatcher, make_shop):
        first = make_shop("growth_extra")
        second = make_shop("growth_extra")
        client.post("/api/sitemap/generate", params={"shop": first})
        client.post("/api/sitemap/generate", params={"shop": second})

        body = client.get("/api/sitemap/info", params={"shop": second}).json()
        assert body["inProgress"] is True
        assert body["status"] == "queued"
        assert body["queue"]["position"] == 2

    def test_completed_exposes_summary(self, client, dispatcher, make_shop):
        shop = make_shop("growth_extra")
        client.post("/api/sitemap/generate", params={"shop": shop})
        v2 = tracker.mark_processing(shop, "sitemap", 1)
        record_generation(shop, "sitemap", summary={"productCount": 25})
        tracker.mark_completed(shop, "sitemap", v2, summary={"productCount": 25})

        body = client.get("/api/sitemap/info", params={"shop": shop}).json()
        assert body["status"] == "completed"
        assert body["version"] == 3
        assert body["sitemap"]["productCount"] == 25
        assert body["sitemap"]["generatedAt"]

    def test_reconciled_failure(self, client, dispatcher, make_shop):
        shop = make_shop("growth_extra")
        client.post("/api/sitemap/generate", params={"shop": shop})
        v2 = tracker.mark_processing(shop, "sitemap", 1)
        tracker.mark_failed(shop, "sitemap", v2, code="GENERATION_FAILED", message="timeout")
        record_generation(shop, "sitemap", summary={"productCount": 9})

        body = client.get("/api/sitemap/info", params={"shop": shop}).json()
        assert body["status"] == "completed"
        assert body["reconciled"] is True
        assert "error" not in body

    @pytest.mark.parametrize("path", ["/api/schema/status", "/api/sitemap/info"])
    def test_unknown_shop(self, client, path):
        resp = client.get(path, params={"shop": "ghost.myshopify.com"})
        assert resp.status_code == 404
