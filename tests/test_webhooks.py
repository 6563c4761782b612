import asyncio

import pytest

from conftest import SHOP, json_body, webhook_headers
from shopgate.webhook import WebhookDispatcher, WebhookRegistry, WebhookRuntime, WebhookState, normalize_topic
from shopgate.webhook.handlers import make_fulfillment_handler


def _installed(app, shop=SHOP):
    return asyncio.run(app.state.installations.includes(shop))


def test_app_uninstalled_removes_installation(client, app, install_shop):
    install_shop()
    body = json_body({"id": 1, "domain": SHOP})

    resp = client.post("/api/webhooks", content=body, headers=webhook_headers("app/uninstalled", body))
    assert resp.status_code == 200
    assert resp.text == "OK"
    assert _installed(app) is False
    assert asyncio.run(app.state.sessions.find_sessions_by_shop(SHOP)) == []

    # Redelivery of the same event is acknowledged and changes nothing.
    again = client.post("/api/webhooks", content=body, headers=webhook_headers("app/uninstalled", body))
    assert again.status_code == 200
    assert _installed(app) is False


def test_bad_signature_is_rejected_before_handling(client, app, install_shop):
    install_shop()
    body = json_body({"id": 1})
    headers = webhook_headers("app/uninstalled", body, secret="wrong")

    resp = client.post("/api/webhooks", content=body, headers=headers)
    assert resp.status_code == 401
    assert _installed(app) is True

    headers.pop("X-Shopify-Hmac-Sha256")
    assert client.post("/api/webhooks", content=body, headers=headers).status_code == 401
    assert _installed(app) is True


def test_webhooks_bypass_the_auth_gate(client):
    # No shop query, no session: a gated path would answer 400.
    body = json_body({"id": 1})
    resp = client.post("/api/webhooks", content=body, headers=webhook_headers("app/uninstalled", body))
    assert resp.status_code == 200


def test_double_slash_path_reaches_the_same_handler(client, app, install_shop):
    install_shop()
    body = json_body({"id": 1})
    resp = client.post("http://testserver//api/webhooks", content=body, headers=webhook_headers("app/uninstalled", body))
    assert resp.status_code == 200
    assert _installed(app) is False


def test_unknown_topic_is_404(client):
    body = json_body({"id": 1})
    resp = client.post("/api/webhooks", content=body, headers=webhook_headers("orders/create", body))
    assert resp.status_code == 404


def test_missing_shop_header_is_400(client):
    body = json_body({"id": 1})
    headers = webhook_headers("app/uninstalled", body)
    headers.pop("X-Shopify-Shop-Domain")
    assert client.post("/api/webhooks", content=body, headers=headers).status_code == 400


def test_malformed_fulfillment_body_is_400(client):
    body = b"not json"
    resp = client.post("/api/fulfillment-update", content=body, headers=webhook_headers("fulfillments/update", body))
    assert resp.status_code == 400


def test_undelivered_fulfillment_is_acknowledged_without_forwarding(client, klaviyo_requests):
    body = json_body({"order_id": 1, "shipment_status": "in_transit", "line_items": []})
    resp = client.post("/api/fulfillment-update", content=body, headers=webhook_headers("fulfillments/update", body))
    assert resp.status_code == 200
    assert klaviyo_requests == []


def test_privacy_webhooks_are_acknowledged(client):
    for topic in ("customers/data_request", "customers/redact", "shop/redact"):
        body = json_body({"shop_domain": SHOP, "customer": {"id": 7}})
        resp = client.post("/api/webhooks", content=body, headers=webhook_headers(topic, body))
        assert resp.status_code == 200, topic


def test_handler_failure_is_500_and_pipeline_keeps_serving(client, app):
    async def boom(topic, shop, raw_body):
        raise RuntimeError("handler bug")

    app.state.webhook_registry.add_handler("ORDERS_CREATE", "/api/webhooks", boom)

    body = json_body({"id": 1})
    failed = client.post("/api/webhooks", content=body, headers=webhook_headers("orders/create", body))
    assert failed.status_code == 500

    ok = client.post("/api/webhooks", content=body, headers=webhook_headers("app/uninstalled", body))
    assert ok.status_code == 200


def test_registry_collapses_duplicate_routes_and_rejects_conflicts():
    registry = WebhookRegistry()

    async def handler(topic, shop, raw_body):
        return None

    async def other(topic, shop, raw_body):
        return None

    first = registry.add_handler("fulfillments/create", "/api/fulfillment-create", handler)
    second = registry.add_handler("FULFILLMENTS_CREATE", "//api/fulfillment-create/", handler)
    assert first is second
    assert len(registry.routes()) == 1
    assert registry.is_webhook_path("//api/fulfillment-create")
    with pytest.raises(ValueError):
        registry.add_handler("FULFILLMENTS_CREATE", "/api/fulfillment-create", other)
    with pytest.raises(ValueError):
        registry.add_handler("bad topic!", "/api/webhooks", handler)


def test_normalize_topic():
    assert normalize_topic("fulfillments/update") == "FULFILLMENTS_UPDATE"
    assert normalize_topic(" APP_UNINSTALLED ") == "APP_UNINSTALLED"
    assert normalize_topic("") == ""


class _Forwarder:
    def __init__(self):
        self.calls = []

    async def forward(self, shop, payload):
        await asyncio.sleep(0)
        self.calls.append((shop, payload["order_id"]))
        return True


def test_delivered_fulfillment_is_forwarded_in_background():
    from conftest import API_SECRET, sign_webhook

    forwarder = _Forwarder()
    rt = WebhookRuntime(installations=None, forwarder=forwarder, secret=API_SECRET)
    registry = WebhookRegistry()
    handler = make_fulfillment_handler(rt)
    registry.add_handler("FULFILLMENTS_UPDATE", "/api/fulfillment-update", handler)
    dispatcher = WebhookDispatcher(registry, rt)
    body = json_body({"order_id": 55, "shipment_status": "delivered", "line_items": []})

    async def _run():
        result = await dispatcher.process(
            path="/api/fulfillment-update",
            topic="fulfillments/update",
            shop=SHOP,
            raw_body=body,
            signature=sign_webhook(body),
        )
        await rt.drain(timeout=5)
        return result

    result = asyncio.run(_run())
    assert result.state == WebhookState.HANDLED
    assert result.status_code == 200
    assert forwarder.calls == [(SHOP, 55)]
    assert rt.tasks == set()


def test_tampered_body_never_reaches_the_handler():
    from conftest import API_SECRET, sign_webhook

    calls = []

    async def handler(topic, shop, raw_body):
        calls.append(topic)

    registry = WebhookRegistry()
    registry.add_handler("APP_UNINSTALLED", "/api/webhooks", handler)
    dispatcher = WebhookDispatcher(registry, WebhookRuntime(installations=None, forwarder=None, secret=API_SECRET))
    signed = json_body({"id": 1})

    result = asyncio.run(
        dispatcher.process(
            path="/api/webhooks",
            topic="app/uninstalled",
            shop=SHOP,
            raw_body=json_body({"id": 2}),
            signature=sign_webhook(signed),
        )
    )
    assert result.state == WebhookState.REJECTED
    assert result.status_code == 401
    assert calls == []


def test_concurrent_uninstalls_both_succeed(client, app, install_shop, monkeypatch):
    from conftest import sign_webhook

    install_shop()
    installations = app.state.webhook_runtime.installations
    removals = []
    original_delete = installations.delete

    async def recording_delete(shop):
        removed = await original_delete(shop)
        removals.append(removed)
        return removed

    monkeypatch.setattr(installations, "delete", recording_delete)
    dispatcher = WebhookDispatcher(app.state.webhook_registry, app.state.webhook_runtime)
    body = json_body({"id": 1})

    async def _deliver():
        return await dispatcher.process(
            path="/api/webhooks",
            topic="app/uninstalled",
            shop=SHOP,
            raw_body=body,
            signature=sign_webhook(body),
        )

    async def _run():
        return await asyncio.gather(_deliver(), _deliver())

    results = asyncio.run(_run())
    assert [r.status_code for r in results] == [200, 200]
    assert sorted(removals) == [False, True]
    assert _installed(app) is False
