from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .errors import GatewayError, Unauthenticated, UpstreamFailure

if TYPE_CHECKING:
    from .db import Session
    from .shopify_client import ShopifyAdminClient

logger = logging.getLogger(__name__)

SAMPLE_PRODUCT_COUNT = 5

ADJECTIVES = ("autumn", "hidden", "bitter", "misty", "silent", "empty", "dry", "dark", "summer", "icy")
NOUNS = ("waterfall", "river", "breeze", "moon", "rain", "wind", "sea", "morning", "snow", "lake")

CREATE_PRODUCT_MUTATION = """
mutation populateProduct($input: ProductInput!) {
  productCreate(input: $input) {
    product { id }
    userErrors { field message }
  }
}
"""


def _random_title(rng: random.Random) -> str:
    return f"{rng.choice(ADJECTIVES)} {rng.choice(NOUNS)}"


def _random_price(rng: random.Random) -> str:
    return f"{rng.randint(100, 10000) / 100:.2f}"


async def create_sample_products(
    shopify: "ShopifyAdminClient",
    session: "Session",
    count: int = SAMPLE_PRODUCT_COUNT,
    rng: Optional[random.Random] = None,
) -> None:
    """Create `count` randomly named products, one `productCreate` call each."""
    rng = rng or random.Random()
    for _ in range(count):
        variables = {
            "input": {
                "title": _random_title(rng),
                "variants": [{"price": _random_price(rng)}],
            }
        }
        data = await shopify.graphql(session.shop, session.access_token, CREATE_PRODUCT_MUTATION, variables)
        payload = data.get("productCreate") or {}
        errors = payload.get("userErrors") or []
        if errors:
            raise UpstreamFailure(f"productCreate rejected: {errors}"[:300])


def _current_session(request: Request) -> "Session":
    # Attached by the auth gate.
    session = getattr(request.state, "shopify_session", None)
    if session is None:
        raise Unauthenticated("no session")
    return session


def create_api_router(shopify: "ShopifyAdminClient") -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/products/count")
    async def products_count(request: Request):
        session = _current_session(request)
        data = await shopify.rest_get(session.shop, session.access_token, "products/count.json")
        return {"count": int(data.get("count") or 0)}

    @router.get("/products/create")
    async def products_create(request: Request):
        session = _current_session(request)
        try:
            await create_sample_products(shopify, session)
        except GatewayError as exc:
            logger.warning("Failed to process products/create for %s: %s", session.shop, exc.detail)
            return JSONResponse({"success": False, "error": exc.detail}, status_code=500)
        return {"success": True, "error": None}

    return router
