"""Webhook ingress: signature check, topic routing, built-in handlers."""

from .dispatcher import WebhookDispatcher, WebhookResult
from .handlers import register_default_handlers
from .registry import WebhookRegistry, normalize_path, normalize_topic
from .router import WebhookPathMiddleware, create_webhook_router
from .runtime import WebhookRuntime, WebhookState
from .subscriptions import register_webhooks

__all__ = [
    "WebhookDispatcher",
    "WebhookPathMiddleware",
    "WebhookRegistry",
    "WebhookResult",
    "WebhookRuntime",
    "WebhookState",
    "create_webhook_router",
    "normalize_path",
    "normalize_topic",
    "register_default_handlers",
    "register_webhooks",
]
