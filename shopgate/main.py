import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, PlainTextResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.responses import Response as StarletteResponse

from .api_routes import create_api_router
from .auth_gate import AuthGate, install_auth_middleware, install_csp_middleware, is_api_path
from .billing import BillingGate
from .config import AppConfig
from .db import AppInstallations, DatabaseManager, SessionStorage
from .errors import GatewayError
from .forwarder import FulfillmentForwarder
from .observability import configure_logging, get_request_id, get_shop, reset_request_id, set_request_id
from .shopify_client import ShopifyAdminClient
from .shopify_oauth_routes import create_oauth_router
from .webhook import (
    WebhookDispatcher,
    WebhookPathMiddleware,
    WebhookRegistry,
    WebhookRuntime,
    create_webhook_router,
    register_default_handlers,
)

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 15.0
HEALTH_DB_TIMEOUT_SECONDS = 2.0


def create_app(
    config: Optional[AppConfig] = None,
    *,
    shopify: Optional[ShopifyAdminClient] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the gateway app.

    `shopify` and `http_transport` let tests swap the Admin API client and the
    outbound transport (Klaviyo, and Shopify when no client is given).
    """
    config = config or AppConfig.from_env()
    configure_logging(level=config.log_level, request_id_getter=get_request_id, shop_getter=get_shop)
    if not config.api_key or not config.api_secret:
        logger.warning("SHOPIFY_API_KEY/SHOPIFY_API_SECRET not set; OAuth and signature checks will fail")
    if not config.klaviyo_public_key:
        logger.warning("KLAVIYO_PUBLIC_KEY not set; delivered events will be rejected by Klaviyo")

    db_manager = DatabaseManager(config.db_path, busy_timeout_ms=config.sqlite_busy_timeout_ms)
    sessions = SessionStorage(db_manager)
    installations = AppInstallations(db_manager)
    shopify = shopify or ShopifyAdminClient(
        api_key=config.api_key,
        api_secret=config.api_secret,
        api_version=config.api_version,
        timeout=config.http_timeout_seconds,
        transport=http_transport,
    )
    billing = BillingGate(shopify, app_url=config.app_url, is_production=config.is_production)
    forwarder = FulfillmentForwarder(
        sessions,
        shopify,
        public_key=config.klaviyo_public_key,
        track_url=config.klaviyo_track_url,
        timeout=config.http_timeout_seconds,
        transport=http_transport,
    )
    webhook_runtime = WebhookRuntime(
        installations=installations,
        forwarder=forwarder,
        secret=config.effective_webhook_secret,
    )
    registry = register_default_handlers(WebhookRegistry(), webhook_runtime)
    dispatcher = WebhookDispatcher(registry, webhook_runtime, custom_shop_domains=config.custom_shop_domains)
    gate = AuthGate(config, sessions, installations, billing, registry)

    app = FastAPI()
    app.state.config = config
    app.state.db = db_manager
    app.state.sessions = sessions
    app.state.installations = installations
    app.state.shopify = shopify
    app.state.billing = billing
    app.state.forwarder = forwarder
    app.state.webhook_runtime = webhook_runtime
    app.state.webhook_registry = registry
    app.state.gate = gate

    app.include_router(create_webhook_router(dispatcher))
    app.include_router(
        create_oauth_router(
            config,
            shopify=shopify,
            sessions=sessions,
            installations=installations,
            billing=billing,
            registry=registry,
        )
    )
    app.include_router(create_api_router(shopify))

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return PlainTextResponse(exc.detail, status_code=exc.status_code)

    # Middleware: the last one declared runs first.
    install_auth_middleware(app, gate)
    install_csp_middleware(app, config)

    # ── Request context: request_id (for tracing) ──────────────────────
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        incoming = (request.headers.get("x-request-id") or "").strip()
        rid, tok = set_request_id(incoming or None)
        try:
            resp: StarletteResponse = await call_next(request)
            resp.headers["X-Request-Id"] = rid
            return resp
        finally:
            reset_request_id(tok)

    # Shopify may call `//api/...`; collapse before routing and the gate see the path.
    app.add_middleware(WebhookPathMiddleware)

    @app.on_event("startup")
    async def startup():
        await db_manager.init_db()
        logger.info(
            "shopgate ready (app_url=%s embedded=%s billing_required=%s webhook_paths=%s)",
            config.app_url,
            config.is_embedded,
            config.billing.required,
            registry.paths(),
        )

    @app.on_event("shutdown")
    async def shutdown():
        await webhook_runtime.drain(timeout=SHUTDOWN_DRAIN_SECONDS)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        try:
            db_ok = await asyncio.wait_for(db_manager.ping(), timeout=HEALTH_DB_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "db": {"ok": db_ok},
            "pending_forwards": len(webhook_runtime.tasks),
        }

    if config.metrics_enabled:
        # Expose Prometheus metrics
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    index_path = Path(config.frontend_dir) / "index.html"

    # Registered last so every route above wins.
    @app.get("/{full_path:path}", include_in_schema=False)
    async def serve_frontend(full_path: str):
        if is_api_path("/" + full_path) or not index_path.is_file():
            return PlainTextResponse("Not Found", status_code=404)
        return FileResponse(str(index_path), headers={"Cache-Control": "no-store, no-cache, must-revalidate, max-age=0"})

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("shopgate.main:app", host="0.0.0.0", port=app.state.config.port, reload=False)


if __name__ == "__main__":
    run()
