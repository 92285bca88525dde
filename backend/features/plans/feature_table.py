"""
backend/features/plans/feature_table.py

Canonical feature availability and cost table.

Every consumer (upfront estimate display, entitlement enforcement, billing
info) reads this table; nothing else lists plan names per feature.

Per feature:
- minimum_plan: lowest tier that can use the feature at all
- included_plan: tier from which the feature carries no token cost (None = never)
- metered_plans: tiers below included_plan that pay with tokens
- overhead / per_unit / unit: token cost inputs for the estimator
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from backend.core.errors import ValidationError
from backend.features.plans.catalog import PLANS, PLAN_ORDER, rank


FEATURE_TABLE_VERSION = "2025-10"


class Feature(str, Enum):
    PRODUCTS_JSON = "productsJson"
    STORE_METADATA = "storeMetadata"
    WELCOME_PAGE = "welcomePage"
    COLLECTIONS_JSON = "collectionsJson"
    AI_SITEMAP = "aiSitemap"
    SCHEMA_DATA = "schemaData"


class WorkloadUnit(str, Enum):
    NONE = "none"
    PRODUCTS = "products"
    COLLECTIONS = "collections"


class Precondition(str, Enum):
    NONE = "none"
    AI_OPTIMIZED_PRODUCTS = "ai_optimized_products"


@dataclass(frozen=True)
class FeatureRule:
    feature: Feature
    minimum_plan: str
    included_plan: Optional[str]
    metered_plans: FrozenSet[str]
    overhead: int = 0
    per_unit: int = 0
    unit: WorkloadUnit = WorkloadUnit.NONE
    precondition: Precondition = Precondition.NONE

    @property
    def minimum_rank(self) -> int:
        return PLANS[self.minimum_plan].rank

    @property
    def included_rank(self) -> Optional[int]:
        return PLANS[self.included_plan].rank if self.included_plan else None

    def is_included(self, plan_rank: int) -> bool:
        included = self.included_rank
        return included is not None and plan_rank >= included

    def is_metered(self, plan_rank: int) -> bool:
        return PLAN_ORDER[plan_rank] in self.metered_plans

    def lowest_granting_plan(self, above_rank: int = -1) -> Optional[str]:
        """Cheapest tier above ``above_rank`` that can use the feature."""
        for key in PLAN_ORDER[above_rank + 1:]:
            plan_rank = PLANS[key].rank
            if plan_rank >= self.minimum_rank and (self.is_included(plan_rank) or self.is_metered(plan_rank)):
                return key
        return None


_PLUS_TIERS = frozenset({"professional_plus", "growth_plus"})

FEATURE_TABLE: Dict[Feature, FeatureRule] = {
    Feature.PRODUCTS_JSON: FeatureRule(
        feature=Feature.PRODUCTS_JSON,
        minimum_plan="starter",
        included_plan="starter",
        metered_plans=frozenset(),
    ),
    Feature.WELCOME_PAGE: FeatureRule(
        feature=Feature.WELCOME_PAGE,
        minimum_plan="professional_plus",
        included_plan="growth",
        metered_plans=frozenset({"professional_plus"}),
        overhead=2000,
    ),
    Feature.COLLECTIONS_JSON: FeatureRule(
        feature=Feature.COLLECTIONS_JSON,
        minimum_plan="professional_plus",
        included_plan="growth",
        metered_plans=frozenset({"professional_plus"}),
        overhead=500,
        per_unit=1500,
        unit=WorkloadUnit.COLLECTIONS,
    ),
    Feature.STORE_METADATA: FeatureRule(
        feature=Feature.STORE_METADATA,
        minimum_plan="professional_plus",
        included_plan="growth_extra",
        metered_plans=_PLUS_TIERS,
        overhead=3000,
    ),
    Feature.AI_SITEMAP: FeatureRule(
        feature=Feature.AI_SITEMAP,
        minimum_plan="professional_plus",
        included_plan="growth_extra",
        metered_plans=_PLUS_TIERS,
        overhead=2000,
        per_unit=2500,
        unit=WorkloadUnit.PRODUCTS,
    ),
    # Enterprise pays schema generation from its included token budget
    Feature.SCHEMA_DATA: FeatureRule(
        feature=Feature.SCHEMA_DATA,
        minimum_plan="enterprise",
        included_plan=None,
        metered_plans=frozenset({"enterprise"}),
        overhead=3000,
        per_unit=150,
        unit=WorkloadUnit.PRODUCTS,
        precondition=Precondition.AI_OPTIMIZED_PRODUCTS,
    ),
}


def _check_table() -> None:
    for rule in FEATURE_TABLE.values():
        for key in rule.metered_plans:
            plan_rank = PLANS[key].rank
            if plan_rank < rule.minimum_rank:
                raise RuntimeError(f"{rule.feature.value}: metered tier {key} below minimum plan")
            if rule.included_rank is not None and plan_rank >= rule.included_rank:
                raise RuntimeError(f"{rule.feature.value}: metered tier {key} is already included")
        if rule.lowest_granting_plan() != rule.minimum_plan:
            raise RuntimeError(f"{rule.feature.value}: minimum plan grants nothing")


_check_table()


def parse_feature(value) -> Feature:
    if isinstance(value, Feature):
        return value
    try:
        return Feature(value)
    except ValueError:
        raise ValidationError(f"Unknown feature: {value!r}", code="invalid_feature")


def get_rule(feature) -> FeatureRule:
    return FEATURE_TABLE[parse_feature(feature)]


def access_mode(feature, plan_name: Optional[str]) -> str:
    """Access label shown in the UI: included, tokens or locked."""
    rule = get_rule(feature)
    plan_rank = rank(plan_name)
    if plan_rank < rule.minimum_rank:
        return "locked"
    if rule.is_included(plan_rank):
        return "included"
    if rule.is_metered(plan_rank):
        return "tokens"
    return "locked"
