import base64

import pytest

from shopgate.billing import BillingInterval
from shopgate.config import AppConfig
from shopgate.errors import BadRequest
from shopgate.shop_domain import (
    decode_host,
    encode_host,
    normalize_shop_domain,
    sanitize_shop,
    trusted_admin_host,
)


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SHOPIFY_API_KEY", " key ")
    monkeypatch.setenv("SHOPIFY_API_SECRET", "secret")
    monkeypatch.setenv("SCOPES", "read_products, write_orders")
    monkeypatch.setenv("HOST", "https://app.example.com/")
    monkeypatch.setenv("SHOP_CUSTOM_DOMAIN", "Shop.Example.com")
    monkeypatch.setenv("BILLING_REQUIRED", "1")
    monkeypatch.setenv("BILLING_INTERVAL", "every_30_days")
    monkeypatch.setenv("BILLING_AMOUNT", "9.99")
    monkeypatch.setenv("EMBEDDED_APP", "0")
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.delenv("SHOPIFY_WEBHOOK_SECRET", raising=False)
    monkeypatch.setenv("DB_PATH", str(tmp_path / "x.sqlite"))

    cfg = AppConfig.from_env(env_file=str(tmp_path / "missing.env"))
    assert cfg.api_key == "key"
    assert cfg.scopes == ("read_products", "write_orders")
    assert cfg.app_url == "https://app.example.com"
    assert cfg.custom_shop_domains == ("shop.example.com",)
    assert cfg.billing.required is True
    assert cfg.billing.interval == BillingInterval.EVERY_30_DAYS
    assert cfg.billing.amount == 9.99
    assert cfg.is_embedded is False
    assert cfg.is_production is True
    assert cfg.effective_webhook_secret == "secret"
    assert cfg.effective_state_secret == "secret"


def test_unknown_billing_interval_falls_back_to_one_time(monkeypatch):
    monkeypatch.setenv("BILLING_INTERVAL", "WEEKLY")
    assert AppConfig.from_env().billing.interval == BillingInterval.ONE_TIME


def test_shop_domain_validation():
    assert sanitize_shop("https://Foo.myshopify.com/admin") == "foo.myshopify.com"
    assert sanitize_shop("foo.myshopify.io") == "foo.myshopify.io"
    assert sanitize_shop("foo.myshopify.com.evil.com") is None
    assert sanitize_shop("shop.example.com") is None
    assert sanitize_shop("shop.example.com", ["shop.example.com"]) == "shop.example.com"
    with pytest.raises(BadRequest) as excinfo:
        normalize_shop_domain("")
    assert excinfo.value.detail == "missing shop"
    with pytest.raises(BadRequest):
        normalize_shop_domain("-foo.myshopify.com")


def test_host_param_round_trip():
    assert decode_host(encode_host("foo.myshopify.com")) == "foo.myshopify.com/admin"
    assert decode_host("not base64!!") is None
    assert decode_host(None) is None


def test_trusted_admin_host():
    shop = "foo.myshopify.com"

    def enc(raw):
        return base64.b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")

    assert trusted_admin_host(enc("admin.shopify.com/store/foo"), shop) == "admin.shopify.com/store/foo"
    assert trusted_admin_host(encode_host(shop), shop) == "foo.myshopify.com/admin"
    assert trusted_admin_host(enc("shop.example.com/admin"), shop, ["shop.example.com"]) == "shop.example.com/admin"
    assert trusted_admin_host(enc("evil.example.com"), shop) is None
    assert trusted_admin_host(enc("admin.shopify.com.evil.com/store/foo"), shop) is None
    assert trusted_admin_host(enc("bar.myshopify.com/admin"), shop) is None
    assert trusted_admin_host(None, shop) is None
