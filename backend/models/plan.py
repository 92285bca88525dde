"""
backend/models/plan.py

Plan model for the subscription catalog.

Plans are ordered capability tiers; the position in the catalog is the rank.
"""

from decimal import Decimal
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    Plan represents one tier of the ordered catalog.

    Examples:
    - starter (rank 0, most restrictive)
    - growth_extra (included token budget)
    - enterprise (highest rank)
    """
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    rank: int
    monthly_price_usd: Decimal
    included_tokens_usd: Decimal = Decimal("0")
    # Included-token plans must end their trial before tokens may be spent
    requires_activation_for_tokens: bool = False
