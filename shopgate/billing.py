"""Billing gate: does the shop hold an active charge matching the app's billing settings?

Any failure talking to Shopify is treated as "not billed" (fail closed).
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .errors import BillingRequired, UpstreamFailure
from .shop_domain import encode_host

if TYPE_CHECKING:
    from .db import Session
    from .shopify_client import ShopifyAdminClient

logger = logging.getLogger(__name__)


class BillingInterval(str, Enum):
    ONE_TIME = "ONE_TIME"
    EVERY_30_DAYS = "EVERY_30_DAYS"
    ANNUAL = "ANNUAL"


RECURRING_INTERVALS = {BillingInterval.EVERY_30_DAYS, BillingInterval.ANNUAL}


@dataclass(frozen=True)
class BillingSettings:
    required: bool = False
    charge_name: str = ""
    amount: float = 0.0
    currency_code: str = "USD"
    interval: BillingInterval = BillingInterval.ONE_TIME


@dataclass(frozen=True)
class BillingResult:
    ok: bool
    confirmation_url: Optional[str] = None


RECURRING_PURCHASES_QUERY = """
query appSubscriptions {
  currentAppInstallation {
    activeSubscriptions {
      name
      status
      test
      lineItems {
        plan {
          pricingDetails {
            ... on AppRecurringPricing {
              interval
              price { amount currencyCode }
            }
          }
        }
      }
    }
  }
}
"""

ONE_TIME_PURCHASES_QUERY = """
query appPurchases($endCursor: String) {
  currentAppInstallation {
    oneTimePurchases(first: 250, sortKey: CREATED_AT, after: $endCursor) {
      edges {
        node { name status test price { amount currencyCode } }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

RECURRING_PURCHASE_MUTATION = """
mutation appSubscriptionCreate(
  $name: String!
  $lineItems: [AppSubscriptionLineItemInput!]!
  $returnUrl: URL!
  $test: Boolean
) {
  appSubscriptionCreate(name: $name, lineItems: $lineItems, returnUrl: $returnUrl, test: $test) {
    confirmationUrl
    userErrors { field message }
  }
}
"""

ONE_TIME_PURCHASE_MUTATION = """
mutation appPurchaseOneTimeCreate(
  $name: String!
  $price: MoneyInput!
  $returnUrl: URL!
  $test: Boolean
) {
  appPurchaseOneTimeCreate(name: $name, returnUrl: $returnUrl, price: $price, test: $test) {
    confirmationUrl
    userErrors { field message }
  }
}
"""

_MAX_PURCHASE_PAGES = 20


def _same_amount(raw, expected: float) -> bool:
    try:
        return abs(float(raw) - float(expected)) < 0.005
    except (TypeError, ValueError):
        return False


class BillingGate:
    def __init__(self, client: "ShopifyAdminClient", *, app_url: str, is_production: bool) -> None:
        self.client = client
        self.app_url = app_url.rstrip("/")
        # Charges are created as test charges outside production.
        self.is_test = not is_production

    async def ensure_billing(self, session: "Session", settings: BillingSettings) -> BillingResult:
        if not settings.required:
            return BillingResult(ok=True)
        try:
            if await self.has_active_payment(session, settings):
                return BillingResult(ok=True)
            confirmation_url = await self.request_payment(session, settings)
        except UpstreamFailure as exc:
            logger.warning("Billing check failed for %s: %s", session.shop, exc.detail)
            return BillingResult(ok=False)
        return BillingResult(ok=False, confirmation_url=confirmation_url)

    async def require(self, session: "Session", settings: BillingSettings) -> None:
        result = await self.ensure_billing(session, settings)
        if not result.ok:
            raise BillingRequired(result.confirmation_url)

    def _counts(self, purchase: dict) -> bool:
        return self.is_test or not bool(purchase.get("test"))

    async def has_active_payment(self, session: "Session", settings: BillingSettings) -> bool:
        if settings.interval in RECURRING_INTERVALS:
            return await self._has_active_subscription(session, settings)
        return await self._has_active_one_time_purchase(session, settings)

    async def _has_active_subscription(self, session: "Session", settings: BillingSettings) -> bool:
        data = await self.client.graphql(session.shop, session.access_token, RECURRING_PURCHASES_QUERY)
        installation = data.get("currentAppInstallation")
        if not isinstance(installation, dict):
            raise UpstreamFailure("Malformed billing response (currentAppInstallation)")
        for sub in installation.get("activeSubscriptions") or []:
            if sub.get("name") != settings.charge_name or not self._counts(sub):
                continue
            if str(sub.get("status") or "ACTIVE").upper() != "ACTIVE":
                continue
            for item in sub.get("lineItems") or []:
                details = ((item or {}).get("plan") or {}).get("pricingDetails") or {}
                price = details.get("price") or {}
                if details.get("interval") == settings.interval.value and _same_amount(
                    price.get("amount"), settings.amount
                ):
                    return True
        return False

    async def _has_active_one_time_purchase(self, session: "Session", settings: BillingSettings) -> bool:
        end_cursor = None
        for _ in range(_MAX_PURCHASE_PAGES):
            data = await self.client.graphql(
                session.shop,
                session.access_token,
                ONE_TIME_PURCHASES_QUERY,
                {"endCursor": end_cursor},
            )
            installation = data.get("currentAppInstallation")
            if not isinstance(installation, dict):
                raise UpstreamFailure("Malformed billing response (currentAppInstallation)")
            purchases = installation.get("oneTimePurchases") or {}
            for edge in purchases.get("edges") or []:
                node = (edge or {}).get("node") or {}
                if (
                    node.get("name") == settings.charge_name
                    and node.get("status") == "ACTIVE"
                    and self._counts(node)
                    and _same_amount((node.get("price") or {}).get("amount"), settings.amount)
                ):
                    return True
            page = purchases.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                return False
            end_cursor = page.get("endCursor")
        return False

    def _return_url(self, shop: str) -> str:
        qs = urllib.parse.urlencode({"shop": shop, "host": encode_host(shop)})
        return f"{self.app_url}?{qs}"

    async def request_payment(self, session: "Session", settings: BillingSettings) -> str:
        price = {"amount": settings.amount, "currencyCode": settings.currency_code}
        if settings.interval in RECURRING_INTERVALS:
            variables = {
                "name": settings.charge_name,
                "lineItems": [
                    {"plan": {"appRecurringPricingDetails": {"interval": settings.interval.value, "price": price}}}
                ],
                "returnUrl": self._return_url(session.shop),
                "test": self.is_test,
            }
            data = await self.client.graphql(session.shop, session.access_token, RECURRING_PURCHASE_MUTATION, variables)
            payload = data.get("appSubscriptionCreate") or {}
        else:
            variables = {
                "name": settings.charge_name,
                "price": price,
                "returnUrl": self._return_url(session.shop),
                "test": self.is_test,
            }
            data = await self.client.graphql(session.shop, session.access_token, ONE_TIME_PURCHASE_MUTATION, variables)
            payload = data.get("appPurchaseOneTimeCreate") or {}

        errors = payload.get("userErrors") or []
        if errors:
            raise UpstreamFailure(f"Billing request rejected: {errors}"[:300])
        url = str(payload.get("confirmationUrl") or "").strip()
        if not url:
            raise UpstreamFailure("Billing request returned no confirmationUrl")
        return url
