"""
Shopify billing provider implementation.

Implements BillingProvider using the Admin GraphQL billing mutations.
The merchant approves the charge on the confirmationUrl; the callback
routes finish the flow.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import httpx

from backend.core.config import settings
from backend.features.billing.provider import BillingProviderError, ChargeResult

logger = logging.getLogger("aiseo")

SUBSCRIPTION_MUTATION = """
mutation AppSubscriptionCreate($name: String!, $returnUrl: URL!, $trialDays: Int, $test: Boolean, $lineItems: [AppSubscriptionLineItemInput!]!) {
  appSubscriptionCreate(name: $name, returnUrl: $returnUrl, trialDays: $trialDays, test: $test, lineItems: $lineItems) {
    appSubscription { id }
    confirmationUrl
    userErrors { field message }
  }
}
"""

ONE_TIME_MUTATION = """
mutation AppPurchaseOneTimeCreate($name: String!, $price: MoneyInput!, $returnUrl: URL!, $test: Boolean) {
  appPurchaseOneTimeCreate(name: $name, price: $price, returnUrl: $returnUrl, test: $test) {
    appPurchaseOneTime { id }
    confirmationUrl
    userErrors { field message }
  }
}
"""


class ShopifyBillingProvider:
    """Shopify implementation of BillingProvider protocol."""

    def __init__(
        self,
        token_lookup: Callable[[str], Optional[str]],
        *,
        api_version: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 15.0,
    ):
        """
        Args:
            token_lookup: returns the offline Admin API token for a shop
            api_version: Admin API version (defaults to SHOPIFY_API_VERSION)
            client: optional preconfigured httpx client
        """
        self.token_lookup = token_lookup
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.client = client or httpx.Client(timeout=timeout)

    def _graphql(self, shop: str, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        token = self.token_lookup(shop)
        if not token:
            raise BillingProviderError(f"No Admin API token for {shop}")
        url = f"https://{shop}/admin/api/{self.api_version}/graphql.json"
        try:
            response = self.client.post(
                url,
                json={"query": query, "variables": variables},
                headers={"X-Shopify-Access-Token": token},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise BillingProviderError(f"Shopify billing request failed: {e}")
        body = response.json()
        if body.get("errors"):
            raise BillingProviderError(f"Shopify billing errors: {body['errors']}")
        return body.get("data") or {}

    def _charge_result(self, payload: Dict[str, Any], object_key: str) -> ChargeResult:
        user_errors = payload.get("userErrors") or []
        if user_errors:
            messages = "; ".join(err.get("message", "") for err in user_errors)
            raise BillingProviderError(f"Shopify rejected charge: {messages}")
        charge = payload.get(object_key) or {}
        url = payload.get("confirmationUrl")
        if not url or not charge.get("id"):
            raise BillingProviderError("Shopify response missing confirmationUrl")
        return ChargeResult(charge_id=charge["id"], confirmation_url=url)

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
        variables = {
            "name": plan_name,
            "returnUrl": return_url,
            "trialDays": trial_days,
            "test": test,
            "lineItems": [{
                "plan": {
                    "appRecurringPricingDetails": {
                        "price": {"amount": str(price_usd), "currencyCode": "USD"},
                        "interval": "EVERY_30_DAYS",
                    }
                }
            }],
        }
        data = self._graphql(shop, SUBSCRIPTION_MUTATION, variables)
        result = self._charge_result(data.get("appSubscriptionCreate") or {}, "appSubscription")
        logger.info("[billing] subscription charge created", extra={"shop": shop, "plan": plan_name})
        return result

    def create_one_time_charge(
        self,
        shop: str,
        *,
        name: str,
        price_usd: Decimal,
        return_url: str,
        test: bool,
    ) -> ChargeResult:
        variables = {
            "name": name,
            "price": {"amount": str(price_usd), "currencyCode": "USD"},
            "returnUrl": return_url,
            "test": test,
        }
        data = self._graphql(shop, ONE_TIME_MUTATION, variables)
        result = self._charge_result(data.get("appPurchaseOneTimeCreate") or {}, "appPurchaseOneTime")
        logger.info("[billing] one-time charge created", extra={"shop": shop, "amount": str(price_usd)})
        return result
