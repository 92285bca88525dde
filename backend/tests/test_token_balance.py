"""
Tests for token estimation and purchase pricing.
"""
from decimal import Decimal

import pytest

from backend.core.errors import ValidationError
from backend.features.plans.feature_table import Feature
from backend.features.tokens.estimator import apply_margin, estimate
from backend.features.tokens.pricing import (
    calculate_tokens,
    pricing_summary,
    validate_purchase_amount,
)


class TestEstimator:
    def test_base_is_overhead_plus_per_unit(self):
        result = estimate("aiSitemap", 200)
        assert result.base == 2000 + 2500 * 200
        assert result.with_margin == 753000

    def test_margin_rounds_up(self):
        assert apply_margin(101, 1.5) == 152
        assert apply_margin(3, Decimal("1.1")) == 4
        assert apply_margin(0, 1.5) == 0

    def test_margin_below_one_rejected(self):
        with pytest.raises(ValidationError):
            apply_margin(100, 0.9)

    @pytest.mark.parametrize("feature", list(Feature))
    def test_monotonic_and_margin_never_below_base(self, feature):
        previous = -1
        for n in [0, 1, 2, 10, 57, 200, 1000]:
            result = estimate(feature, n)
            assert result.with_margin >= result.base
            assert result.with_margin >= previous
            previous = result.with_margin

    def test_deterministic(self):
        assert estimate("schemaData", 42) == estimate("schemaData", 42)

    def test_margin_from_settings(self, monkeypatch):
        from backend.core.config import settings

        monkeypatch.setattr(settings, "TOKEN_SAFETY_MARGIN", 2.0)
        assert estimate("storeMetadata").with_margin == 6000

    @pytest.mark.parametrize("size", [-1, 1.5, True])
    def test_invalid_workload(self, size):
        with pytest.raises(ValidationError):
            estimate("aiSitemap", size)

    def test_unknown_feature(self):
        with pytest.raises(ValidationError):
            estimate("blogPosts", 1)


class TestPricing:
    @pytest.mark.parametrize("amount", [5, 10, "20", 1000, 995.0])
    def test_valid_amounts(self, amount):
        assert validate_purchase_amount(amount) == Decimal(str(amount))

    @pytest.mark.parametrize("amount", [0, 4, 7, 1005, -10, "abc", "nan"])
    def test_invalid_amounts(self, amount):
        with pytest.raises(ValidationError):
            validate_purchase_amount(amount)

    def test_token_conversion(self):
        # 60% of $10 at $0.10 per 1M tokens
        assert calculate_tokens(10) == 60_000_000
        assert calculate_tokens(Decimal("35.70")) == 214_200_000

    def test_presets(self):
        presets = pricing_summary()["presets"]
        assert [p["usd"] for p in presets] == [10, 20, 50, 100]
