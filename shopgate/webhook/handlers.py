from __future__ import annotations

import json
import logging

from ..errors import BadRequest
from .registry import WebhookHandler, WebhookRegistry
from .runtime import WebhookRuntime

logger = logging.getLogger(__name__)

WEBHOOKS_PATH = "/api/webhooks"
FULFILLMENT_CREATE_PATH = "/api/fulfillment-create"
FULFILLMENT_UPDATE_PATH = "/api/fulfillment-update"

DELIVERED = "delivered"


def _parse_event(raw_body: bytes) -> dict:
    try:
        payload = json.loads((raw_body or b"").decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BadRequest(f"Malformed webhook body: {exc.__class__.__name__}") from exc
    if not isinstance(payload, dict):
        raise BadRequest("Malformed webhook body: expected a JSON object")
    return payload


def make_app_uninstalled_handler(rt: WebhookRuntime) -> WebhookHandler:
    async def app_uninstalled(topic: str, shop: str, raw_body: bytes) -> None:
        removed = await rt.installations.delete(shop)
        if not removed:
            logger.info("Uninstall for %s received but shop was not installed (duplicate delivery)", shop)

    return app_uninstalled


def make_fulfillment_handler(rt: WebhookRuntime) -> WebhookHandler:
    async def fulfillment_event(topic: str, shop: str, raw_body: bytes) -> None:
        payload = _parse_event(raw_body)
        status = payload.get("shipment_status")
        logger.info("%s @ %s order=%s shipment_status=%s", topic, shop, payload.get("order_id"), status)
        if status == DELIVERED:
            # Shopify gets its 200 without waiting on Klaviyo.
            rt.spawn(
                rt.forwarder.forward(shop, payload),
                name=f"forward-{shop}-{payload.get('order_id')}",
            )

    return fulfillment_event


def make_privacy_handler() -> WebhookHandler:
    async def privacy_request(topic: str, shop: str, raw_body: bytes) -> None:
        # No customer data is stored beyond Shopify sessions, so there is nothing to export or redact.
        payload = _parse_event(raw_body)
        logger.info(
            "%s received for %s (customer=%s)",
            topic,
            shop,
            (payload.get("customer") or {}).get("id") if isinstance(payload.get("customer"), dict) else None,
        )

    return privacy_request


def register_default_handlers(registry: WebhookRegistry, rt: WebhookRuntime) -> WebhookRegistry:
    registry.add_handler("APP_UNINSTALLED", WEBHOOKS_PATH, make_app_uninstalled_handler(rt))

    fulfillment = make_fulfillment_handler(rt)
    registry.add_handler("FULFILLMENTS_CREATE", FULFILLMENT_CREATE_PATH, fulfillment)
    registry.add_handler("FULFILLMENTS_UPDATE", FULFILLMENT_UPDATE_PATH, fulfillment)

    privacy = make_privacy_handler()
    for topic in ("CUSTOMERS_DATA_REQUEST", "CUSTOMERS_REDACT", "SHOP_REDACT"):
        registry.add_handler(topic, WEBHOOKS_PATH, privacy)
    return registry
