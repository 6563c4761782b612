from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict

from ..errors import UpstreamFailure
from .registry import WebhookRegistry

if TYPE_CHECKING:
    from ..db import Session
    from ..shopify_client import ShopifyAdminClient

logger = logging.getLogger(__name__)

WEBHOOK_SUBSCRIPTION_CREATE = """
mutation webhookSubscriptionCreate($topic: WebhookSubscriptionTopic!, $webhookSubscription: WebhookSubscriptionInput!) {
  webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
    webhookSubscription { id }
    userErrors { field message }
  }
}
"""


async def register_webhooks(
    client: "ShopifyAdminClient",
    session: "Session",
    registry: WebhookRegistry,
    *,
    app_url: str,
) -> Dict[str, bool]:
    """Subscribe the shop to every registered topic; returns {topic@path: success}.

    Best effort: a failed subscription is logged and does not abort the install.
    """
    results: Dict[str, bool] = {}
    for route in registry.routes():
        if not route.registrable:
            continue
        key = f"{route.topic}@{route.path}"
        variables = {
            "topic": route.topic,
            "webhookSubscription": {"callbackUrl": f"{app_url.rstrip('/')}{route.path}", "format": "JSON"},
        }
        try:
            data = await client.graphql(session.shop, session.access_token, WEBHOOK_SUBSCRIPTION_CREATE, variables)
        except UpstreamFailure as exc:
            logger.warning("Failed to register %s webhook for %s: %s", route.topic, session.shop, exc.detail)
            results[key] = False
            continue
        errors = (data.get("webhookSubscriptionCreate") or {}).get("userErrors") or []
        if errors:
            # "Address for this topic has already been taken" on reinstall is expected.
            logger.info("Webhook %s for %s not created: %s", route.topic, session.shop, errors)
        results[key] = not errors
    return results
