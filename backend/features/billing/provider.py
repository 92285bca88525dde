"""
Billing provider protocol.

Defines the interface for the platform billing API (Shopify app charges).
Business logic only needs a confirmation URL the merchant is redirected to
and an identifier to reconcile the callback with.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class ChargeResult:
    """A charge awaiting merchant confirmation."""
    charge_id: str
    confirmation_url: str


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Recurring plan subscriptions (with optional trial)
    - One-time charges (token purchases)
    """

    def create_subscription(
        self,
        shop: str,
        *,
        plan_name: str,
        price_usd: Decimal,
        trial_days: int,
        return_url: str,
        test: bool,
    ) -> ChargeResult:
        """
        Create a recurring app subscription.

        Raises:
            BillingProviderError: If the platform rejects the request
        """
        ...

    def create_one_time_charge(
        self,
        shop: str,
        *,
        name: str,
        price_usd: Decimal,
        return_url: str,
        test: bool,
    ) -> ChargeResult:
        """
        Create a one-time app purchase.

        Raises:
            BillingProviderError: If the platform rejects the request
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass
