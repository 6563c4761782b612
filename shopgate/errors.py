"""Error taxonomy shared by the gate, the webhook pipeline and the forwarder."""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    status_code = 500

    def __init__(self, detail: str = "", *, status_code: Optional[int] = None) -> None:
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code


class BadRequest(GatewayError):
    """Missing/invalid shop, or a webhook body that cannot be parsed."""

    status_code = 400


class Unauthenticated(GatewayError):
    """Signature mismatch, or missing/invalid session."""

    status_code = 401


class BillingRequired(GatewayError):
    status_code = 402

    def __init__(self, confirmation_url: Optional[str] = None, detail: str = "Billing required") -> None:
        super().__init__(detail)
        self.confirmation_url = confirmation_url


class UpstreamFailure(GatewayError):
    """Shopify or Klaviyo call failed (network, HTTP status or malformed response)."""

    status_code = 502


class HandlerFailure(GatewayError):
    status_code = 500
