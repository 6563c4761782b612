"""Forward delivered-shipment events to Klaviyo.

One `forward()` call per delivered fulfillment webhook:

1. build the Klaviyo `track` event from the fulfillment payload;
2. enrich it with the order's paid total and discount code via the Admin API,
   once per stored session of the shop. The last successful session's total
   wins; discount codes accumulate;
3. POST it once as form data. No retry: the webhook is already acknowledged.

Enrichment and delivery failures are logged and never raised.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Iterable, Optional

import httpx

if TYPE_CHECKING:
    from .db import SessionStorage
    from .shopify_client import ShopifyAdminClient

logger = logging.getLogger(__name__)

EVENT_NAME = "Order Delivered"

ORDER_TOTALS_QUERY = """
query orderTotals($id: ID!) {
  order(id: $id) {
    id
    totalPriceSet { shopMoney { amount } }
    discountCode
  }
}
"""


def _to_decimal(value: Any) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")
    return d if d.is_finite() else Decimal("0")


def order_subtotal(line_items: Iterable[dict]) -> Decimal:
    """Sum of unit price x quantity over the fulfillment's line items."""
    total = Decimal("0")
    for item in line_items or []:
        if not isinstance(item, dict):
            continue
        total += _to_decimal(item.get("price")) * _to_decimal(item.get("quantity") or 0)
    return total


def _s(value: Any) -> str:
    return "" if value is None else str(value)


def build_delivered_event(payload: dict, *, public_key: str) -> dict:
    dest = payload.get("destination") or {}
    if not isinstance(dest, dict):
        dest = {}
    line_items = [i for i in (payload.get("line_items") or []) if isinstance(i, dict)]
    order_id = payload.get("order_id")

    items = [
        {
            "Name": item.get("title"),
            "Quantity": item.get("quantity"),
            "SKU": item.get("sku"),
            "ProductId": item.get("product_id"),
            "Price": item.get("price"),
        }
        for item in line_items
    ]

    return {
        "token": public_key,
        "event": EVENT_NAME,
        "customer_properties": {
            "$email": _s(payload.get("email")),
            "$first_name": _s(dest.get("first_name")),
            "$last_name": _s(dest.get("last_name")),
            "$phone_number": _s(dest.get("phone")),
            "$city": _s(dest.get("city")),
            "$region": _s(dest.get("province")),
            "$country": _s(dest.get("country")),
            "$zip": _s(dest.get("zip")),
            "$address1": _s(dest.get("address1")),
            "$address2": _s(dest.get("address2")),
            "$company": _s(dest.get("company")),
            "$fullname": _s(dest.get("name")),
            "$orderId": order_id,
        },
        "properties": {
            "$event_id": order_id,
            "$value": 0,
            "CourierName": [payload.get("tracking_company")],
            "CurrentStatus": [payload.get("shipment_status")],
            "OriginAddress": [payload.get("origin_address")],
            "OriginalOrderPrice": float(order_subtotal(line_items)),
            "TotalAmountPaid": 0,
            "ItemNames": [item.get("title") for item in line_items],
            "DeliveredOn": [payload.get("updated_at")],
            "Items": items,
            "City": [dest.get("city")],
            "Province": [dest.get("province")],
            "ProvinceCode": [dest.get("province_code")],
            "Country": [dest.get("country")],
            "ZipCode": [dest.get("zip")],
            "CountryCode": [dest.get("country_code")],
            "DiscountCodeApplied": [],
        },
    }


class FulfillmentForwarder:
    def __init__(
        self,
        sessions: "SessionStorage",
        shopify: "ShopifyAdminClient",
        *,
        public_key: str,
        track_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.sessions = sessions
        self.shopify = shopify
        self.public_key = public_key
        self.track_url = track_url
        self.timeout = timeout
        self._transport = transport

    async def enrich(self, event: dict, shop: str, order_id: Any) -> None:
        props = event["properties"]
        try:
            sessions = await self.sessions.find_sessions_by_shop(shop)
        except Exception as exc:
            logger.warning("Order enrichment skipped for %s order=%s: %s", shop, order_id, exc.__class__.__name__)
            return
        for session in sessions:
            if not session.access_token:
                continue
            try:
                data = await self.shopify.graphql(
                    session.shop,
                    session.access_token,
                    ORDER_TOTALS_QUERY,
                    {"id": f"gid://shopify/Order/{order_id}"},
                )
            except Exception as exc:
                detail = getattr(exc, "detail", None) or exc.__class__.__name__
                logger.warning(
                    "Order enrichment failed for %s order=%s session=%s: %s", shop, order_id, session.id, detail
                )
                continue
            order = data.get("order") or {}
            amount = ((order.get("totalPriceSet") or {}).get("shopMoney") or {}).get("amount")
            if amount is not None:
                props["TotalAmountPaid"] = float(_to_decimal(amount))
            code = order.get("discountCode")
            if code:
                props["DiscountCodeApplied"].append(code)

    async def send(self, event: dict) -> bool:
        form = {"data": json.dumps(event)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.track_url, data=form, headers={"accept": "text/html"})
        except httpx.HTTPError as exc:
            logger.error("Klaviyo track request failed: %s", exc.__class__.__name__)
            return False
        if resp.status_code >= 400:
            logger.error("Klaviyo track rejected event: status=%s body=%s", resp.status_code, (resp.text or "")[:200])
            return False
        logger.info("Klaviyo track accepted event %s: %s", event["properties"].get("$event_id"), (resp.text or "")[:200])
        return True

    async def forward(self, shop: str, payload: dict) -> bool:
        try:
            event = build_delivered_event(payload, public_key=self.public_key)
            await self.enrich(event, shop, payload.get("order_id"))
            logger.debug("Forwarding delivered event for %s: %s", shop, event)
            return await self.send(event)
        except Exception:
            logger.exception("Forwarding delivered event for %s failed", shop)
            return False
