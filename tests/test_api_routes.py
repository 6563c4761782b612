import asyncio
import random

from conftest import SHOP, session_token
from shopgate.api_routes import CREATE_PRODUCT_MUTATION, SAMPLE_PRODUCT_COUNT, create_sample_products
from shopgate.db import Session


def _bearer():
    return {"Authorization": f"Bearer {session_token()}"}


def _created(query, variables):
    return {"productCreate": {"product": {"id": "gid://shopify/Product/1"}, "userErrors": []}}


def test_products_create_makes_sample_products(client, install_shop, fake_shopify):
    install_shop()
    fake_shopify.graphql_handler = _created

    resp = client.get("/api/products/create", headers=_bearer())
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "error": None}

    creates = [c for c in fake_shopify.calls if c[0] == "graphql" and c[2] == CREATE_PRODUCT_MUTATION]
    assert len(creates) == SAMPLE_PRODUCT_COUNT
    assert all(c[1] == SHOP for c in creates)
    product = creates[0][3]["input"]
    assert product["title"]
    assert float(product["variants"][0]["price"]) >= 1.0


def test_products_create_reports_user_errors_as_500(client, install_shop, fake_shopify):
    install_shop()

    def _rejected(query, variables):
        return {"productCreate": {"product": None, "userErrors": [{"field": ["title"], "message": "Title taken"}]}}

    fake_shopify.graphql_handler = _rejected

    resp = client.get("/api/products/create", headers=_bearer())
    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert "Title taken" in body["error"]
    # Stops at the first rejected product.
    assert len([c for c in fake_shopify.calls if c[0] == "graphql"]) == 1


def test_products_create_requires_a_session_token(client, install_shop):
    install_shop()
    assert client.get("/api/products/create").status_code == 400


def test_create_sample_products_is_seedable(fake_shopify):
    fake_shopify.graphql_handler = _created
    session = Session(id=f"offline_{SHOP}", shop=SHOP, access_token="t")

    def _titles(seed):
        fake_shopify.calls.clear()
        asyncio.run(create_sample_products(fake_shopify, session, count=3, rng=random.Random(seed)))
        return [c[3]["input"]["title"] for c in fake_shopify.calls]

    assert _titles(7) == _titles(7)
    assert len(_titles(7)) == 3
