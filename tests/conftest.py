import asyncio
import hashlib
import hmac
import json
import os
import time
from base64 import b64encode

import pytest

# Keep the module-level app (imported by some tests) away from the real data dir and registry.
os.environ.setdefault("METRICS_ENABLED", "0")
os.environ.setdefault("DB_PATH", ":memory:")

from jose import jwt

from shopgate.billing import BillingSettings
from shopgate.config import AppConfig
from shopgate.db import AppInstallations, DatabaseManager, Session, SessionStorage, offline_session_id
from shopgate.main import create_app

API_KEY = "test-key"
API_SECRET = "test-secret"
APP_URL = "https://app.example.com"
SHOP = "foo.myshopify.com"
SCOPES = "read_products,write_products,read_orders,read_fulfillments"


def sign_webhook(body: bytes, secret: str = API_SECRET) -> str:
    return b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


def webhook_headers(topic: str, body: bytes, shop: str = SHOP, secret: str = API_SECRET) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop,
        "X-Shopify-Hmac-Sha256": sign_webhook(body, secret),
    }


def session_token(shop: str = SHOP, *, secret: str = API_SECRET, audience: str = API_KEY, ttl: int = 60) -> str:
    now = int(time.time())
    return jwt.encode(
        {
            "iss": f"https://{shop}/admin",
            "dest": f"https://{shop}",
            "aud": audience,
            "sub": "42",
            "exp": now + ttl,
            "nbf": now - 5,
            "iat": now - 5,
            "jti": "jti-1",
            "sid": "sid-1",
        },
        secret,
        algorithm="HS256",
    )


class FakeShopify:
    """Stands in for ShopifyAdminClient; records calls and replays scripted answers."""

    def __init__(self):
        self.calls = []
        self.graphql_handler = None
        self.rest = {"products/count.json": {"count": 7}}
        self.token = ("shpat_test", SCOPES)

    async def graphql(self, shop, access_token, query, variables=None):
        self.calls.append(("graphql", shop, query, variables or {}))
        if self.graphql_handler is not None:
            return self.graphql_handler(query, variables or {})
        return {}

    async def rest_get(self, shop, access_token, resource):
        self.calls.append(("rest_get", shop, resource))
        return self.rest.get(resource, {})

    async def exchange_code_for_access_token(self, shop, code):
        self.calls.append(("exchange", shop, code))
        return self.token


def make_config(tmp_path, **overrides) -> AppConfig:
    frontend = tmp_path / "frontend"
    frontend.mkdir(exist_ok=True)
    (frontend / "index.html").write_text("<html><body>app</body></html>")
    values = dict(
        api_key=API_KEY,
        api_secret=API_SECRET,
        scopes=tuple(SCOPES.split(",")),
        host=APP_URL,
        db_path=str(tmp_path / "db.sqlite"),
        frontend_dir=str(frontend),
        klaviyo_public_key="pk_test",
        metrics_enabled=False,
        billing=BillingSettings(required=False),
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def fake_shopify():
    return FakeShopify()


@pytest.fixture
def klaviyo_requests():
    return []


@pytest.fixture
def klaviyo_transport(klaviyo_requests):
    import httpx

    def handler(request):
        klaviyo_requests.append(request)
        return httpx.Response(200, text="1")

    return httpx.MockTransport(handler)


@pytest.fixture
def app(config, fake_shopify, klaviyo_transport):
    return create_app(config, shopify=fake_shopify, http_transport=klaviyo_transport)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db_manager(tmp_path):
    dm = DatabaseManager(str(tmp_path / "store.sqlite"))
    asyncio.run(dm.init_db())
    return dm


@pytest.fixture
def install_shop(app):
    """Install a shop with an active offline session in the app's database."""
    def _install(shop: str = SHOP, scope: str = SCOPES, access_token: str = "shpat_test"):
        async def _run():
            sessions: SessionStorage = app.state.sessions
            installations: AppInstallations = app.state.installations
            await installations.add(shop)
            if scope is not None:
                await sessions.store_session(
                    Session(id=offline_session_id(shop), shop=shop, scope=scope, access_token=access_token)
                )
        asyncio.run(_run())
    return _install


def json_body(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")
