from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Optional
import uuid

# NOTE: These are request-scoped for HTTP handlers. Detached forwarder tasks inherit
# a copy of the context that spawned them.
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_SHOP: ContextVar[Optional[str]] = ContextVar("shop", default=None)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def set_request_id(value: Optional[str] = None) -> tuple[str, Token[Optional[str]]]:
    rid = (value or "").strip() or uuid.uuid4().hex
    tok = _REQUEST_ID.set(rid)
    return rid, tok


def reset_request_id(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)


def get_shop() -> Optional[str]:
    return _SHOP.get()


def set_shop(value: Optional[str]) -> Token[Optional[str]]:
    v = (value or "").strip().lower() if value else None
    return _SHOP.set(v or None)


def reset_shop(token: Token[Optional[str]]) -> None:
    _SHOP.reset(token)
