from __future__ import annotations

import hashlib
import hmac
import urllib.parse
from base64 import b64encode
from typing import Iterable, List, Optional, Tuple


def _strip_wrapping_quotes(value: str) -> str:
    """Remove a single pair of wrapping quotes if present.

    .env setups sometimes accidentally include quotes, e.g.
    SHOPIFY_API_SECRET="deadbeef..."
    """
    s = (value or "").strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        return s[1:-1].strip()
    return s


def _b64_variants(digest: bytes) -> list[str]:
    """Return accepted header encodings (with/without base64 padding)."""
    b64 = b64encode(digest).decode("utf-8")
    no_pad = b64.rstrip("=")
    return [b64] if no_pad == b64 else [b64, no_pad]


def compute_webhook_hmac_candidates(secret: str, body: bytes) -> list[str]:
    """Compute accepted `X-Shopify-Hmac-Sha256` values: base64(HMAC_SHA256(secret, raw_body))."""
    secret_norm = _strip_wrapping_quotes(secret)
    if not secret_norm:
        return []
    digest = hmac.new(secret_norm.encode("utf-8"), body or b"", hashlib.sha256).digest()
    return _b64_variants(digest)


def verify_webhook_hmac_debug(
    raw_body: bytes, signature_header: Optional[str], secret: str
) -> tuple[bool, dict]:
    """Verify a webhook signature; returns (ok, safe_debug_info) with no secret material."""
    hdr = (signature_header or "").strip()
    try:
        candidates = compute_webhook_hmac_candidates(secret, raw_body)
        ok = bool(hdr) and any(hmac.compare_digest(exp.encode("utf-8"), hdr.encode("utf-8")) for exp in candidates)
    except (TypeError, ValueError, UnicodeError):
        candidates, ok = [], False

    debug = {
        "secret_configured": bool(_strip_wrapping_quotes(secret)),
        "body_len": len(raw_body or b""),
        "header_len": len(hdr),
        "header_prefix": (hdr[:8] + "…") if hdr else "",
        "candidates": len(candidates),
    }
    return ok, debug


def verify_webhook_hmac(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Constant-time check of the webhook signature over the raw, unparsed body."""
    ok, _ = verify_webhook_hmac_debug(raw_body, signature_header, secret)
    return ok


def _canonical_hmac_msg(qp: Iterable[Tuple[str, str]]) -> str:
    keep = [(k, v) for (k, v) in qp if k not in ("hmac", "signature")]
    keep.sort(key=lambda kv: (kv[0], kv[1]))
    return urllib.parse.urlencode(keep, doseq=True)


def _joined_hmac_msg(qp: Iterable[Tuple[str, str]]) -> str:
    keep = [(k, v) for (k, v) in qp if k not in ("hmac", "signature")]
    keep.sort(key=lambda kv: (kv[0], kv[1]))
    return "&".join(f"{k}={v}" for (k, v) in keep)


def verify_oauth_hmac(query_pairs: List[Tuple[str, str]], secret: str) -> bool:
    """Verify the `hmac` parameter of an OAuth callback query string.

    Canonicalization differs between proxies, so both the url-encoded and the
    raw `k=v` join of the decoded parameters are accepted.
    """
    provided = ""
    for k, v in query_pairs:
        if k == "hmac":
            provided = (v or "").strip().lower()
    secret_norm = _strip_wrapping_quotes(secret)
    if not provided or not secret_norm:
        return False

    def _hmac_hex(message: str) -> str:
        return hmac.new(secret_norm.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    for message in (_canonical_hmac_msg(query_pairs), _joined_hmac_msg(query_pairs)):
        if hmac.compare_digest(_hmac_hex(message), provided):
            return True
    return False
