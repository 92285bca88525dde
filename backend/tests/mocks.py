from decimal import Decimal
from typing import List, Tuple

from backend.features.billing.provider import BillingProviderError, ChargeResult


class FakeDispatcher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.dispatched: List[Tuple[str, str, int]] = []

    def dispatch(self, shop: str, job_type: str, version: int) -> str:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.dispatched.append((shop, job_type, version))
        return f"{job_type}-{version}"


class FakeBillingProvider:
    def __init__(self, reject: bool = False):
        self.reject = reject
        self.subscriptions = []
        self.charges = []

    def create_subscription(self, shop, *, plan_name, price_usd: Decimal, trial_days, return_url, test):
        if self.reject:
            raise BillingProviderError("Shopify rejected charge: test")
        self.subscriptions.append(
            {"shop": shop, "plan_name": plan_name, "price": price_usd, "trial_days": trial_days, "return_url": return_url}
        )
        n = len(self.subscriptions)
        return ChargeResult(
            charge_id=f"gid://shopify/AppSubscription/{n}",
            confirmation_url=f"https://{shop}/admin/charges/{n}/confirm",
        )

    def create_one_time_charge(self, shop, *, name, price_usd: Decimal, return_url, test):
        if self.reject:
            raise BillingProviderError("Shopify rejected charge: test")
        self.charges.append({"shop": shop, "name": name, "price": price_usd, "return_url": return_url})
        n = len(self.charges)
        return ChargeResult(
            charge_id=f"gid://shopify/AppPurchaseOneTime/{n}",
            confirmation_url=f"https://{shop}/admin/charges/{n}/confirm_purchase",
        )
