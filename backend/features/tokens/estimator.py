"""
Token cost estimation.

Pure and deterministic: safe to call for an upfront estimate without
touching state. Costs come from the canonical feature table.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Optional, Union

from backend.core.config import settings
from backend.core.errors import ValidationError
from backend.features.plans.feature_table import get_rule


@dataclass(frozen=True)
class TokenEstimate:
    feature: str
    workload_size: int
    base: int
    with_margin: int

    def to_dict(self) -> dict:
        return {
            "feature": self.feature,
            "workloadSize": self.workload_size,
            "base": self.base,
            "withMargin": self.with_margin,
        }


def apply_margin(base: int, margin: Optional[Union[float, Decimal]] = None) -> int:
    """Multiply by the safety margin, rounding up."""
    factor = Decimal(str(margin if margin is not None else settings.TOKEN_SAFETY_MARGIN))
    if factor < 1:
        raise ValidationError("Safety margin must be >= 1", code="invalid_margin")
    return int((Decimal(base) * factor).to_integral_value(rounding=ROUND_CEILING))


def estimate(feature, workload_size: int = 0, *, margin: Optional[Union[float, Decimal]] = None) -> TokenEstimate:
    """Estimate the token cost of running ``feature`` over ``workload_size`` units.

    Raises:
        ValidationError: unknown feature or negative workload
    """
    rule = get_rule(feature)
    if workload_size is None:
        workload_size = 0
    if isinstance(workload_size, bool) or int(workload_size) != workload_size or workload_size < 0:
        raise ValidationError("workload_size must be a non-negative integer", code="invalid_workload")
    workload_size = int(workload_size)

    base = rule.overhead + rule.per_unit * workload_size
    return TokenEstimate(
        feature=rule.feature.value,
        workload_size=workload_size,
        base=base,
        with_margin=apply_margin(base, margin),
    )
