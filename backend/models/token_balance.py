"""
backend/models/token_balance.py

Per-shop token balance.

Tokens never expire; the balance only moves through ledger credits and debits.
"""

from pydantic import BaseModel, ConfigDict, Field


class TokenBalance(BaseModel):
    """
    TokenBalance is a snapshot of a shop's balance row.

    Constraint: balance >= 0 at all times.
    """
    model_config = ConfigDict(frozen=True)

    shop: str
    balance: int = Field(default=0, ge=0)
    total_purchased: int = 0
    total_used: int = 0

    def to_public(self) -> dict:
        return {
            "balance": self.balance,
            "totalPurchased": self.total_purchased,
            "totalUsed": self.total_used,
        }
