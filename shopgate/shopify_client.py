from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import httpx

from .errors import UpstreamFailure

logger = logging.getLogger(__name__)


class ShopifyApiError(UpstreamFailure):
    def __init__(self, detail: str, *, upstream_status: Optional[int] = None) -> None:
        super().__init__(detail)
        self.upstream_status = upstream_status


class ShopifyAdminClient:
    """Thin Admin API client: GraphQL queries and the OAuth code exchange.

    A new httpx client is opened per call with a finite timeout so a slow shop
    cannot pin request concurrency.
    """

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        api_version: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def admin_api_base(self, shop: str) -> str:
        return f"https://{shop}/admin/api/{self.api_version}"

    async def graphql(
        self,
        shop: str,
        access_token: str,
        query: str,
        variables: Optional[dict] = None,
    ) -> dict:
        """Execute an Admin GraphQL request and return its `data` object."""
        url = f"{self.admin_api_base(shop)}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        try:
            async with self._client() as client:
                resp = await client.post(url, json={"query": query, "variables": variables or {}}, headers=headers)
        except httpx.HTTPError as exc:
            raise ShopifyApiError(f"Shopify request failed: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            raise ShopifyApiError(
                (resp.text or "Shopify error")[:300],
                upstream_status=resp.status_code,
            )
        try:
            body: Any = resp.json()
        except ValueError as exc:
            raise ShopifyApiError("Shopify returned a non-JSON body", upstream_status=resp.status_code) from exc
        if not isinstance(body, dict):
            raise ShopifyApiError("Shopify returned an unexpected body", upstream_status=resp.status_code)
        if body.get("errors"):
            # GraphQL top-level errors
            raise ShopifyApiError(str(body.get("errors"))[:300], upstream_status=resp.status_code)
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def rest_get(self, shop: str, access_token: str, resource: str) -> dict:
        """GET an Admin REST resource, e.g. `products/count.json`."""
        url = f"{self.admin_api_base(shop)}/{resource.lstrip('/')}"
        try:
            async with self._client() as client:
                resp = await client.get(url, headers={"X-Shopify-Access-Token": access_token})
        except httpx.HTTPError as exc:
            raise ShopifyApiError(f"Shopify request failed: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            raise ShopifyApiError((resp.text or "Shopify error")[:300], upstream_status=resp.status_code)
        try:
            body: Any = resp.json()
        except ValueError as exc:
            raise ShopifyApiError("Shopify returned a non-JSON body", upstream_status=resp.status_code) from exc
        return body if isinstance(body, dict) else {}

    async def exchange_code_for_access_token(self, shop: str, code: str) -> Tuple[str, str]:
        """Trade the OAuth callback code for an offline access token; returns (token, scope)."""
        token_url = f"https://{shop}/admin/oauth/access_token"
        try:
            async with self._client() as client:
                resp = await client.post(
                    token_url,
                    json={"client_id": self.api_key, "client_secret": self.api_secret, "code": code},
                )
        except httpx.HTTPError as exc:
            raise ShopifyApiError(f"Token exchange failed: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            raise ShopifyApiError(
                f"Token exchange failed: {(resp.text or '')[:300]}",
                upstream_status=resp.status_code,
            )
        try:
            data = resp.json() if resp.content else {}
        except ValueError as exc:
            raise ShopifyApiError("Token exchange returned a non-JSON body") from exc
        access_token = str((data or {}).get("access_token") or "").strip()
        scope = str((data or {}).get("scope") or "").strip()
        if not access_token:
            raise ShopifyApiError("Token exchange response is missing access_token")
        return access_token, scope
