"""Session / installation / billing gate for every non-webhook request.

Order of checks:

1. shop from `?shop=` or the App Bridge session token (400 when missing/invalid);
2. not installed -> OAuth (except the `/exitiframe` escape page);
3. embedded app loaded outside the admin -> embedded admin URL;
4. no active offline session -> OAuth;
5. billing required and not paid -> billing confirmation.

Page routes get redirects. `/api/*` fetches cannot follow a cross-origin
redirect, so they get 401/402 with the reauthorize headers App Bridge reads.
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from jose import JWTError, jwt
from starlette.responses import Response

from .db import Session, offline_session_id
from .errors import BadRequest, BillingRequired, Unauthenticated
from .observability import reset_shop, set_shop
from .shop_domain import normalize_shop_domain, sanitize_shop, trusted_admin_host

if TYPE_CHECKING:
    from .billing import BillingGate
    from .config import AppConfig
    from .db import AppInstallations, SessionStorage
    from .webhook import WebhookRegistry

logger = logging.getLogger(__name__)

AUTH_PATH = "/api/auth"
AUTH_CALLBACK_PATH = "/api/auth/callback"
EXIT_IFRAME_PATH = "/exitiframe"
PUBLIC_PATHS = {"/health", "/metrics", AUTH_PATH, AUTH_CALLBACK_PATH}

REAUTH_HEADER = "X-Shopify-API-Request-Failure-Reauthorize"
REAUTH_URL_HEADER = "X-Shopify-API-Request-Failure-Reauthorize-Url"


class GateOutcome(str, Enum):
    PASS = "pass"
    AUTHORIZE = "authorize"
    EMBED = "embed"
    BILLING = "billing"
    REJECT = "reject"


@dataclass(frozen=True)
class GateDecision:
    outcome: GateOutcome
    shop: Optional[str] = None
    session: Optional[Session] = None
    location: Optional[str] = None
    status_code: int = 200
    detail: str = ""


def _bearer_token(request: Request) -> Optional[str]:
    auth = (request.headers.get("authorization") or "").strip()
    if auth[:7].lower() == "bearer ":
        return auth[7:].strip() or None
    return None


def is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")


class AuthGate:
    def __init__(
        self,
        config: "AppConfig",
        sessions: "SessionStorage",
        installations: "AppInstallations",
        billing: "BillingGate",
        registry: "WebhookRegistry",
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.installations = installations
        self.billing = billing
        self.registry = registry

    def applies_to(self, path: str) -> bool:
        return path not in PUBLIC_PATHS and not self.registry.is_webhook_path(path)

    def decode_session_token(self, token: str) -> str:
        """Validate an App Bridge session token and return the shop it was issued for."""
        try:
            claims = jwt.decode(
                token,
                self.config.api_secret,
                algorithms=["HS256"],
                audience=self.config.api_key,
                options={"leeway": 10},
            )
        except JWTError as exc:
            raise Unauthenticated(f"invalid session token: {exc}") from exc
        shop = sanitize_shop(str(claims.get("dest") or ""), self.config.custom_shop_domains)
        if not shop:
            raise Unauthenticated("session token has no valid dest")
        return shop

    # ── redirect targets ──
    def auth_url(self, request: Request, shop: str) -> str:
        if request.query_params.get("embedded") == "1":
            # Inside the admin iframe OAuth must run at top level; /exitiframe breaks out.
            redirect_uri = f"{self.config.app_url}{AUTH_PATH}?{urllib.parse.urlencode({'shop': shop})}"
            params = {"shop": shop, "redirectUri": redirect_uri}
            host = request.query_params.get("host")
            if host:
                params["host"] = host
            return f"{EXIT_IFRAME_PATH}?{urllib.parse.urlencode(params)}"
        return f"{AUTH_PATH}?{urllib.parse.urlencode({'shop': shop})}"

    def embedded_app_url(self, request: Request, shop: str) -> str:
        host = trusted_admin_host(request.query_params.get("host"), shop, self.config.custom_shop_domains)
        if host:
            return f"https://{host}/apps/{self.config.api_key}"
        return f"https://{shop}/admin/apps/{self.config.api_key}"

    # ── decision ──
    async def authorize(self, request: Request) -> GateDecision:
        path = request.url.path

        # 1. tenant
        token_shop = None
        token = _bearer_token(request)
        if token:
            try:
                token_shop = self.decode_session_token(token)
            except Unauthenticated as exc:
                logger.info("Rejected session token on %s: %s", path, exc.detail)
                if not request.query_params.get("shop"):
                    return GateDecision(GateOutcome.REJECT, status_code=401, detail="Invalid session token")
        try:
            shop = normalize_shop_domain(
                request.query_params.get("shop") or token_shop,
                self.config.custom_shop_domains,
            )
        except BadRequest as exc:
            return GateDecision(GateOutcome.REJECT, status_code=exc.status_code, detail=exc.detail)
        if token_shop and token_shop != shop:
            return GateDecision(GateOutcome.REJECT, shop=shop, status_code=401, detail="Session token does not match shop")

        if path == EXIT_IFRAME_PATH:
            return GateDecision(GateOutcome.PASS, shop=shop)

        # 2. installed
        if not await self.installations.includes(shop):
            return GateDecision(GateOutcome.AUTHORIZE, shop=shop, location=self.auth_url(request, shop))

        # 3. embedded context
        embedded = request.query_params.get("embedded") == "1" or token_shop is not None
        if self.config.is_embedded and not embedded:
            location = self.embedded_app_url(request, shop) + path
            return GateDecision(GateOutcome.EMBED, shop=shop, location=location)

        # 4. session
        session = await self.sessions.load_session(offline_session_id(shop))
        if session is None or not session.is_active(self.config.scopes):
            return GateDecision(GateOutcome.AUTHORIZE, shop=shop, location=self.auth_url(request, shop))

        # 5. billing
        if self.config.billing.required:
            try:
                await self.billing.require(session, self.config.billing)
            except BillingRequired as exc:
                if exc.confirmation_url:
                    return GateDecision(GateOutcome.BILLING, shop=shop, location=exc.confirmation_url)
                return GateDecision(
                    GateOutcome.REJECT, shop=shop, status_code=503, detail="Unable to verify billing status"
                )

        return GateDecision(GateOutcome.PASS, shop=shop, session=session)

    def to_response(self, request: Request, decision: GateDecision) -> Response:
        api = is_api_path(request.url.path)
        if decision.outcome == GateOutcome.REJECT:
            return PlainTextResponse(decision.detail, status_code=decision.status_code)
        if api and decision.outcome in (GateOutcome.AUTHORIZE, GateOutcome.BILLING):
            status_code = 402 if decision.outcome == GateOutcome.BILLING else 401
            location = decision.location or ""
            if location.startswith("/"):
                location = f"{self.config.app_url}{location}"
            return PlainTextResponse(
                "Billing required" if status_code == 402 else "Reauthorization required",
                status_code=status_code,
                headers={REAUTH_HEADER: "1", REAUTH_URL_HEADER: location},
            )
        return RedirectResponse(url=decision.location or "/", status_code=302)


def frame_ancestors_policy(request: Request, config: "AppConfig") -> str:
    shop = sanitize_shop(request.query_params.get("shop"), config.custom_shop_domains)
    if config.is_embedded and shop:
        return f"frame-ancestors https://{urllib.parse.quote(shop)} https://admin.shopify.com;"
    return "frame-ancestors 'none';"


def install_auth_middleware(app: FastAPI, gate: AuthGate) -> None:
    @app.middleware("http")
    async def verify_request(request: Request, call_next):
        if request.method == "OPTIONS" or not gate.applies_to(request.url.path):
            return await call_next(request)
        decision = await gate.authorize(request)
        if decision.outcome != GateOutcome.PASS:
            logger.info(
                "Gate %s for %s %s (shop=%s status=%s)",
                decision.outcome.value,
                request.method,
                request.url.path,
                decision.shop,
                decision.status_code,
            )
            return gate.to_response(request, decision)
        request.state.shop = decision.shop
        request.state.shopify_session = decision.session
        token = set_shop(decision.shop)
        try:
            return await call_next(request)
        finally:
            reset_shop(token)


def install_csp_middleware(app: FastAPI, config: "AppConfig") -> None:
    @app.middleware("http")
    async def content_security_policy(request: Request, call_next):
        # Applied to every response, including gate rejections and failures below.
        policy = frame_ancestors_policy(request, config)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error serving %s %s", request.method, request.url.path)
            response = PlainTextResponse("Internal server error", status_code=500)
        response.headers["Content-Security-Policy"] = policy
        return response
