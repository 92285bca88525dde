"""
Tests for the feature entitlement resolver.
"""
import pytest

from backend.core.errors import EntitlementDeniedError
from backend.features.entitlements import service
from backend.features.entitlements.service import (
    EntitlementReason,
    check_entitlement,
    entitlement_error_payload,
    feature_availability,
    raise_for_decision,
)
from backend.features.tokens.estimator import TokenEstimate


def _forbid(name):
    def _fail(*args, **kwargs):
        raise AssertionError(f"{name} must not be called")
    return _fail


class TestPlanGate:
    def test_starter_denied_schema_data_without_token_arithmetic(self, make_shop, monkeypatch):
        shop = make_shop("Starter", balance=1_000_000, products=10, ai_optimized=10)
        monkeypatch.setattr(service, "estimate", _forbid("estimate"))
        monkeypatch.setattr(service, "get_balance", _forbid("get_balance"))
        monkeypatch.setattr(service, "get_catalog_stats", _forbid("get_catalog_stats"))

        decision = check_entitlement(shop, "schemaData")

        assert decision.allowed is False
        assert decision.reason == EntitlementReason.DENIED_PLAN
        assert decision.minimum_plan == "enterprise"
        assert decision.tokens_required == 0
        assert decision.tokens_available is None

    def test_gap_tier_points_to_next_granting_plan(self, make_shop):
        shop = make_shop("growth", balance=1_000_000)
        decision = check_entitlement(shop, "aiSitemap")
        assert decision.reason == EntitlementReason.DENIED_PLAN
        assert decision.minimum_plan == "growth_plus"

    def test_uninstalled_shop_behaves_as_lowest_tier(self):
        decision = check_entitlement("ghost.myshopify.com", "aiSitemap")
        assert decision.reason == EntitlementReason.DENIED_PLAN
        assert decision.current_plan == "starter"
        assert check_entitlement("ghost.myshopify.com", "productsJson").allowed


class TestIncludedTier:
    def test_included_plan_costs_nothing(self, make_shop, monkeypatch):
        shop = make_shop("growth_extra", products=500)
        monkeypatch.setattr(service, "get_balance", _forbid("get_balance"))
        decision = check_entitlement(shop, "aiSitemap")
        assert decision.allowed is True
        assert decision.reason == EntitlementReason.ALLOWED
        assert decision.tokens_required == 0

    def test_included_plan_ignores_trial(self, make_shop):
        shop = make_shop("growth_extra", in_trial=True)
        assert check_entitlement(shop, "storeMetadata").allowed


class TestMeteredTier:
    def test_insufficient_tokens_reports_shortfall(self, make_shop, monkeypatch):
        shop = make_shop("growth_plus", balance=50, products=200)
        seen = {}

        def fake_estimate(feature, workload_size=0, **kwargs):
            seen["workload"] = workload_size
            return TokenEstimate(feature=feature.value, workload_size=workload_size, base=54, with_margin=80)

        monkeypatch.setattr(service, "estimate", fake_estimate)
        decision = check_entitlement(shop, "aiSitemap")

        assert seen["workload"] == 200
        assert decision.reason == EntitlementReason.DENIED_TOKENS
        assert decision.tokens_required == 80
        assert decision.tokens_available == 50
        assert decision.tokens_needed == 30
        assert decision.error_code == "INSUFFICIENT_TOKENS"

    def test_enough_tokens_allows_with_cost(self, make_shop):
        shop = make_shop("professional_plus", balance=10_000, collections=2)
        decision = check_entitlement(shop, "collectionsJson")
        assert decision.allowed
        assert decision.tokens_required == 5250  # (500 + 2 * 1500) * 1.5
        assert decision.tokens_available == 10_000

    def test_explicit_workload_overrides_catalog(self, make_shop):
        shop = make_shop("growth_plus", balance=10_000_000, products=999)
        decision = check_entitlement(shop, "aiSitemap", workload_size=2)
        assert decision.workload_size == 2
        assert decision.tokens_required == 10500

    def test_trial_blocks_activation_plans(self, make_shop):
        shop = make_shop("enterprise", in_trial=True, balance=100, products=10, ai_optimized=10)
        decision = check_entitlement(shop, "schemaData")

        assert decision.reason == EntitlementReason.DENIED_TRIAL
        assert decision.error_code == "TRIAL_RESTRICTION"
        payload = entitlement_error_payload(decision)
        assert payload["trialRestriction"] is True
        assert payload["requiresActivation"] is True
        # Trial is decided first; the shortfall is still reported
        assert payload["tokensRequired"] == 6750
        assert payload["tokensAvailable"] == 100
        assert payload["tokensNeeded"] == 6650
        assert payload["requiresPurchase"] is True

    def test_activated_enterprise_allowed(self, make_shop):
        shop = make_shop("enterprise", balance=10_000, products=10, ai_optimized=10)
        decision = check_entitlement(shop, "schemaData")
        assert decision.allowed
        assert decision.tokens_required == 6750


class TestPreconditions:
    def test_no_optimized_products_is_hard_deny(self, make_shop):
        shop = make_shop("enterprise", balance=10_000, products=10)
        decision = check_entitlement(shop, "schemaData", force_basic_seo=True)
        assert decision.reason == EntitlementReason.DENIED_PRECONDITION
        assert decision.error_code == "NO_OPTIMIZED_PRODUCTS"
        assert not decision.can_proceed_anyway

    def test_basic_only_is_soft_warning(self, make_shop):
        shop = make_shop("enterprise", balance=10_000, products=10, basic_seo=10)
        decision = check_entitlement(shop, "schemaData")
        assert decision.reason == EntitlementReason.WARN_BASIC_ONLY
        assert decision.error_code == "ONLY_BASIC_SEO"
        assert decision.can_proceed_anyway
        assert not decision.requires_payment

    def test_basic_only_can_be_forced(self, make_shop):
        shop = make_shop("enterprise", balance=10_000, products=10, basic_seo=10)
        decision = check_entitlement(shop, "schemaData", force_basic_seo=True)
        assert decision.allowed

    def test_token_denial_precedes_precondition(self, make_shop):
        shop = make_shop("enterprise", balance=0, products=10)
        decision = check_entitlement(shop, "schemaData")
        assert decision.reason == EntitlementReason.DENIED_TOKENS


class TestEnforcement:
    def test_raise_for_payment_denials(self, make_shop):
        shop = make_shop("starter")
        decision = check_entitlement(shop, "schemaData")
        with pytest.raises(EntitlementDeniedError) as exc:
            raise_for_decision(decision)
        assert exc.value.status_code == 402
        assert exc.value.payload["minimumPlanForFeature"] == "enterprise"
        assert exc.value.payload["currentPlan"] == "starter"
        assert exc.value.decision is decision

    def test_preconditions_are_not_raised(self, make_shop):
        shop = make_shop("enterprise", balance=10_000, products=10)
        raise_for_decision(check_entitlement(shop, "schemaData"))


class TestAvailability:
    def test_display_matches_enforcement(self, make_shop):
        shop = make_shop("growth_plus", balance=10_000_000, products=4)
        availability = feature_availability(shop)

        assert availability["productsJson"]["access"] == "included"
        assert availability["aiSitemap"]["access"] == "tokens"
        assert availability["aiSitemap"]["estimatedTokens"] == check_entitlement(shop, "aiSitemap").tokens_required
        assert availability["schemaData"]["access"] == "locked"
        assert availability["schemaData"]["minimumPlan"] == "enterprise"
        assert availability["welcomePage"]["access"] == "included"
