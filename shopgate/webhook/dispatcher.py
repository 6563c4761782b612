"""Webhook dispatch: verify, route, handle.

Per delivery: received -> verified -> routed -> handled | rejected.

- Signature failure -> 401, no handler runs.
- Unknown (topic, path) -> 404.
- Handler raises BadRequest -> 400; anything else -> 500 so Shopify retries.
  Exceptions never escape `process()`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import BadRequest, HandlerFailure
from ..observability import reset_shop, set_shop
from ..shop_domain import sanitize_shop
from ..shopify_webhook import verify_webhook_hmac_debug
from .registry import WebhookRegistry, normalize_path, normalize_topic
from .runtime import WebhookRuntime, WebhookState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    state: WebhookState
    status_code: int
    detail: str = ""
    topic: str = ""
    shop: str = ""


class WebhookDispatcher:
    def __init__(self, registry: WebhookRegistry, rt: WebhookRuntime, *, custom_shop_domains=()) -> None:
        self.registry = registry
        self.rt = rt
        self.custom_shop_domains = tuple(custom_shop_domains)

    def _reject(self, status_code: int, detail: str, *, topic: str = "", shop: str = "") -> WebhookResult:
        return WebhookResult(WebhookState.REJECTED, status_code, detail, topic, shop)

    async def process(
        self,
        *,
        path: str,
        topic: Optional[str],
        shop: Optional[str],
        raw_body: bytes,
        signature: Optional[str],
    ) -> WebhookResult:
        path = normalize_path(path)
        topic_raw = (topic or "").strip()

        # 1. Verify against the raw bytes, before anything parses the body.
        ok, dbg = verify_webhook_hmac_debug(raw_body, signature, self.rt.secret)
        if not ok:
            logger.warning(
                "Invalid webhook HMAC (path=%s topic=%s shop=%s body_len=%s header_len=%s header_prefix=%s secret_configured=%s)",
                path,
                topic_raw,
                (shop or "").strip(),
                dbg.get("body_len"),
                dbg.get("header_len"),
                dbg.get("header_prefix"),
                dbg.get("secret_configured"),
            )
            return self._reject(401, "Invalid webhook HMAC", topic=topic_raw)

        # 2. Route.
        gql_topic = normalize_topic(topic_raw)
        shop_norm = sanitize_shop(shop, self.custom_shop_domains)
        if not gql_topic or not shop_norm:
            logger.warning("Webhook missing topic/shop headers (path=%s topic=%r shop=%r)", path, topic_raw, shop)
            return self._reject(400, "Missing or invalid webhook topic/shop", topic=gql_topic)

        handler = self.registry.get_handler(gql_topic, path)
        if handler is None:
            logger.warning("No webhook handler registered for %s at %s", gql_topic, path)
            return self._reject(404, f"No webhook is registered for topic {gql_topic}", topic=gql_topic, shop=shop_norm)

        # 3. Handle.
        token = set_shop(shop_norm)
        try:
            await handler(gql_topic, shop_norm, raw_body)
        except BadRequest as exc:
            logger.warning("Webhook %s for %s rejected: %s", gql_topic, shop_norm, exc.detail)
            return self._reject(400, exc.detail, topic=gql_topic, shop=shop_norm)
        except Exception as exc:
            failure = HandlerFailure(f"Failed to process webhook {gql_topic}: {exc.__class__.__name__}")
            logger.exception("%s (shop=%s path=%s)", failure.detail, shop_norm, path)
            return self._reject(failure.status_code, failure.detail, topic=gql_topic, shop=shop_norm)
        finally:
            reset_shop(token)

        logger.info("Webhook %s processed for %s", gql_topic, shop_norm)
        return WebhookResult(WebhookState.HANDLED, 200, "OK", gql_topic, shop_norm)
