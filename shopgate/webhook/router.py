from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from .dispatcher import WebhookDispatcher
from .registry import normalize_path

logger = logging.getLogger(__name__)


class WebhookPathMiddleware:
    """ASGI middleware collapsing repeated slashes before routing.

    Shopify has been configured with both `/api/x` and `//api/x` callback URLs;
    normalizing here lets a single route serve both.
    """

    def __init__(self, app) -> None:
        self.app = app

    async def __call__(self, scope, receive, send) -> None:
        if scope.get("type") == "http":
            path = scope.get("path") or "/"
            if "//" in path:
                normalized = normalize_path(path)
                scope = dict(scope)
                scope["path"] = normalized
                scope["raw_path"] = normalized.encode("utf-8")
        await self.app(scope, receive, send)


def create_webhook_router(dispatcher: WebhookDispatcher) -> APIRouter:
    router = APIRouter()

    async def webhook(request: Request):
        """Shopify webhook endpoint: verify the raw body, then dispatch by topic."""
        # Raw bytes only; the body must not be parsed before the HMAC check.
        body = await request.body()
        result = await dispatcher.process(
            path=request.url.path,
            topic=request.headers.get("X-Shopify-Topic"),
            shop=request.headers.get("X-Shopify-Shop-Domain"),
            raw_body=body,
            signature=request.headers.get("X-Shopify-Hmac-Sha256"),
        )
        if result.status_code == 200:
            logger.debug("Webhook processed, returned status code 200")
        return PlainTextResponse(result.detail, status_code=result.status_code)

    for path in dispatcher.registry.paths():
        router.add_api_route(path, webhook, methods=["POST"], include_in_schema=False)
    return router
