from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# (topic, shop, raw_body) -> None
WebhookHandler = Callable[[str, str, bytes], Awaitable[None]]

_SLASHES = re.compile(r"/{2,}")
_TOPIC_RE = re.compile(r"^[A-Z0-9_]+$")

# Mandatory privacy webhooks are configured in the Partner dashboard, not via the API.
MANDATORY_TOPICS = frozenset({"CUSTOMERS_DATA_REQUEST", "CUSTOMERS_REDACT", "SHOP_REDACT"})


def normalize_path(path: str) -> str:
    """Collapse repeated slashes and drop a trailing slash: `//api/x/` -> `/api/x`."""
    p = _SLASHES.sub("/", "/" + (path or "").strip())
    if len(p) > 1:
        p = p.rstrip("/")
    return p


def normalize_topic(topic: str) -> str:
    """`fulfillments/create` (header form) -> `FULFILLMENTS_CREATE` (GraphQL form)."""
    t = (topic or "").strip().upper().replace("/", "_").replace(".", "_")
    return t if _TOPIC_RE.match(t) else ""


@dataclass(frozen=True)
class WebhookRoute:
    topic: str
    path: str
    handler: WebhookHandler

    @property
    def registrable(self) -> bool:
        return self.topic not in MANDATORY_TOPICS


class WebhookRegistry:
    """Routing table keyed by (topic, normalized path)."""

    def __init__(self) -> None:
        self._routes: Dict[Tuple[str, str], WebhookRoute] = {}

    def add_handler(self, topic: str, path: str, handler: WebhookHandler) -> WebhookRoute:
        key = (normalize_topic(topic), normalize_path(path))
        if not key[0]:
            raise ValueError(f"invalid webhook topic {topic!r}")
        existing = self._routes.get(key)
        if existing is not None:
            if existing.handler is handler:
                logger.debug("Webhook route %s %s already registered; collapsing duplicate", *key)
                return existing
            raise ValueError(f"conflicting handler for webhook {key[0]} at {key[1]}")
        route = WebhookRoute(topic=key[0], path=key[1], handler=handler)
        self._routes[key] = route
        return route

    def get_handler(self, topic: str, path: str) -> Optional[WebhookHandler]:
        route = self._routes.get((normalize_topic(topic), normalize_path(path)))
        return route.handler if route else None

    def routes(self) -> List[WebhookRoute]:
        return list(self._routes.values())

    def paths(self) -> List[str]:
        seen: List[str] = []
        for _topic, path in self._routes:
            if path not in seen:
                seen.append(path)
        return seen

    def is_webhook_path(self, path: str) -> bool:
        return normalize_path(path) in self.paths()
