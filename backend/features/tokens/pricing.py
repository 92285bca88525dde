"""
Token purchase pricing.

Purchases are in USD; part of every purchase funds the AI provider budget and
that part is converted to tokens at the provider rate. Tokens never expire and
roll over between billing cycles.
"""

from decimal import Decimal, ROUND_FLOOR
from typing import List, Union

from backend.core.errors import ValidationError

MIN_PURCHASE_USD = Decimal("5")
MAX_PURCHASE_USD = Decimal("1000")
PURCHASE_INCREMENT_USD = Decimal("5")
PRESET_AMOUNTS_USD: List[int] = [10, 20, 50, 100]

APP_REVENUE_SHARE = Decimal("0.40")
TOKEN_BUDGET_SHARE = Decimal("0.60")

# Provider cost: USD per one million tokens
PROVIDER_RATE_PER_MILLION = Decimal("0.10")
TOKENS_PER_MILLION = 1_000_000

Amount = Union[int, float, str, Decimal]


def _to_decimal(amount: Amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except Exception:
        raise ValidationError(f"Invalid amount: {amount!r}", code="invalid_amount")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}", code="invalid_amount")
    return value


def validate_purchase_amount(amount: Amount) -> Decimal:
    """Return the amount as Decimal or raise ValidationError."""
    value = _to_decimal(amount)
    if value < MIN_PURCHASE_USD:
        raise ValidationError(f"Minimum purchase is ${MIN_PURCHASE_USD}", code="invalid_amount")
    if value > MAX_PURCHASE_USD:
        raise ValidationError(f"Maximum purchase is ${MAX_PURCHASE_USD}", code="invalid_amount")
    if value % PURCHASE_INCREMENT_USD != 0:
        raise ValidationError(f"Amount must be in ${PURCHASE_INCREMENT_USD} increments", code="invalid_amount")
    return value


def calculate_tokens(usd_amount: Amount) -> int:
    """Tokens bought by ``usd_amount`` (the token-budget share at provider rate)."""
    budget = _to_decimal(usd_amount) * TOKEN_BUDGET_SHARE
    tokens = budget / PROVIDER_RATE_PER_MILLION * TOKENS_PER_MILLION
    return int(tokens.to_integral_value(rounding=ROUND_FLOOR))


def pricing_summary() -> dict:
    return {
        "minimumPurchase": float(MIN_PURCHASE_USD),
        "maximumPurchase": float(MAX_PURCHASE_USD),
        "increment": float(PURCHASE_INCREMENT_USD),
        "presets": [
            {"usd": usd, "tokens": calculate_tokens(usd)} for usd in PRESET_AMOUNTS_USD
        ],
        "providerRatePerMillion": float(PROVIDER_RATE_PER_MILLION),
        "neverExpire": True,
    }
