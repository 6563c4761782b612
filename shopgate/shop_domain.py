from __future__ import annotations

import base64
import binascii
import re
import urllib.parse
from typing import Iterable, Optional

from .errors import BadRequest

_SHOP_RE = re.compile(r"^[a-z0-9][a-z0-9\-_]*\.myshopify\.(com|io)$")
_HOST_RE = re.compile(r"^[a-z0-9][a-z0-9\-.]*[a-z0-9](:\d+)?(/[a-z0-9\-_./]*)?$")


def _host_part(raw: str) -> str:
    s = (raw or "").strip().lower()
    host = s
    if "://" in s:
        u = urllib.parse.urlparse(s)
        host = (u.netloc or u.path or "").strip().lower()
    return host.split("/")[0].split("?")[0].split("#")[0].strip()


def sanitize_shop(raw: Optional[str], custom_domains: Iterable[str] = ()) -> Optional[str]:
    """Return the canonical shop domain, or None when `raw` is not shop-shaped."""
    host = _host_part(raw or "")
    if not host:
        return None
    if _SHOP_RE.match(host):
        return host
    if host in {d.strip().lower() for d in custom_domains if d}:
        return host
    return None


def normalize_shop_domain(raw: Optional[str], custom_domains: Iterable[str] = ()) -> str:
    if not (raw or "").strip():
        raise BadRequest("missing shop")
    shop = sanitize_shop(raw, custom_domains)
    if not shop:
        raise BadRequest("invalid shop (expected *.myshopify.com)")
    return shop


def decode_host(host: Optional[str]) -> Optional[str]:
    """Decode the base64 `host` query parameter Shopify appends to embedded app URLs."""
    raw = (host or "").strip()
    if not raw:
        return None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8").strip().lower()
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return decoded if _HOST_RE.match(decoded) else None


def encode_host(shop: str) -> str:
    return base64.b64encode(f"{shop}/admin".encode("utf-8")).decode("ascii").rstrip("=")


_ADMIN_STORE_RE = re.compile(r"^admin\.shopify\.com/store/[a-z0-9][a-z0-9\-_]*$")


def trusted_admin_host(host: Optional[str], shop: str, custom_domains: Iterable[str] = ()) -> Optional[str]:
    """Decode `host` and keep it only when it points at this shop's admin.

    Accepted forms are `admin.shopify.com/store/<handle>` and `<shop>/admin`,
    where `<shop>` may also be a configured custom domain. Anything else is None.
    """
    decoded = decode_host(host)
    if not decoded:
        return None
    decoded = decoded.rstrip("/")
    if _ADMIN_STORE_RE.match(decoded):
        return decoded
    allowed = {shop.lower()} | {d.strip().lower() for d in custom_domains if d}
    if decoded.endswith("/admin") and decoded[: -len("/admin")] in allowed:
        return decoded
    return None
