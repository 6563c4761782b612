from __future__ import annotations

import hmac
import logging
import os
import urllib.parse
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse
from jose import JWTError, jwt

from .auth_gate import AUTH_CALLBACK_PATH, AUTH_PATH
from .db import Session, offline_session_id
from .errors import BadRequest, Unauthenticated
from .shop_domain import normalize_shop_domain, trusted_admin_host
from .shopify_webhook import verify_oauth_hmac
from .webhook import register_webhooks

if TYPE_CHECKING:
    from .billing import BillingGate
    from .config import AppConfig
    from .db import AppInstallations, SessionStorage
    from .shopify_client import ShopifyAdminClient
    from .webhook import WebhookRegistry

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 10 * 60


def _now_ts() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def sign_state(payload: Dict[str, Any], secret: str) -> str:
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_state(token: str, secret: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError:
        raise BadRequest("invalid state")


def create_oauth_router(
    config: "AppConfig",
    *,
    shopify: "ShopifyAdminClient",
    sessions: "SessionStorage",
    installations: "AppInstallations",
    billing: "BillingGate",
    registry: "WebhookRegistry",
) -> APIRouter:
    router = APIRouter()

    @router.get(AUTH_PATH)
    async def shopify_oauth_begin(shop: str = Query("")):
        shop_norm = normalize_shop_domain(shop, config.custom_shop_domains)
        now = _now_ts()
        state = sign_state(
            {
                "shop": shop_norm,
                "nonce": os.urandom(16).hex(),
                "iat": now,
                "exp": now + STATE_TTL_SECONDS,
            },
            config.effective_state_secret,
        )
        qs = urllib.parse.urlencode(
            {
                "client_id": config.api_key,
                "scope": ",".join(config.scopes),
                "redirect_uri": f"{config.app_url}{AUTH_CALLBACK_PATH}",
                "state": state,
            }
        )
        logger.info("Starting OAuth for %s", shop_norm)
        return RedirectResponse(url=f"https://{shop_norm}/admin/oauth/authorize?{qs}", status_code=302)

    @router.get(AUTH_CALLBACK_PATH)
    async def shopify_oauth_callback(
        request: Request,
        state: str = Query(""),
        shop: str = Query(""),
        code: str = Query(""),
    ):
        shop_norm = normalize_shop_domain(shop, config.custom_shop_domains)
        qp = [(k, str(v)) for (k, v) in request.query_params.multi_items()]
        if not verify_oauth_hmac(qp, config.api_secret):
            logger.warning("Invalid OAuth callback HMAC for %s (keys=%s)", shop_norm, sorted({k for k, _ in qp}))
            raise Unauthenticated("invalid_hmac")
        st = verify_state(state, config.effective_state_secret)
        shop_in_state = str(st.get("shop") or "")
        if not hmac.compare_digest(shop_in_state, shop_norm):
            raise BadRequest("state/shop mismatch")
        if not code:
            raise BadRequest("missing code")

        access_token, scope = await shopify.exchange_code_for_access_token(shop_norm, code)
        session = Session(
            id=offline_session_id(shop_norm),
            shop=shop_norm,
            state=state,
            is_online=False,
            scope=scope,
            access_token=access_token,
        )
        await sessions.store_session(session)
        if await installations.add(shop_norm):
            logger.info("Installed for %s (scope=%s)", shop_norm, scope)

        results = await register_webhooks(shopify, session, registry, app_url=config.app_url)
        failed = [key for key, ok in results.items() if not ok]
        if failed:
            logger.warning("Webhook registration incomplete for %s: %s", shop_norm, failed)

        if config.billing.required:
            result = await billing.ensure_billing(session, config.billing)
            if not result.ok and result.confirmation_url:
                return RedirectResponse(url=result.confirmation_url, status_code=302)

        host = request.query_params.get("host")
        if config.is_embedded:
            decoded = trusted_admin_host(host, shop_norm, config.custom_shop_domains)
            base = f"https://{decoded}" if decoded else f"https://{shop_norm}/admin"
            return RedirectResponse(url=f"{base}/apps/{config.api_key}/", status_code=302)
        params = {"shop": shop_norm}
        if host:
            params["host"] = host
        return RedirectResponse(url=f"/?{urllib.parse.urlencode(params)}", status_code=302)

    return router
