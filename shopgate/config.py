from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from .billing import BillingInterval, BillingSettings

ROOT_DIR = Path(__file__).resolve().parent.parent

DEFAULT_API_VERSION = "2023-04"
DEFAULT_SCOPES = "read_products,write_products,read_orders,read_fulfillments"
KLAVIYO_TRACK_URL = "https://a.klaviyo.com/api/track"


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_flag(name: str, default: str = "0") -> bool:
    return _env(name, default).lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name) or default)
    except ValueError:
        return default


def _split_scopes(raw: str) -> Tuple[str, ...]:
    return tuple(s.strip() for s in (raw or "").split(",") if s.strip())


@dataclass(frozen=True)
class AppConfig:
    """Process-wide settings, built once and handed to every component."""

    api_key: str = ""
    api_secret: str = ""
    scopes: Tuple[str, ...] = _split_scopes(DEFAULT_SCOPES)
    # Public URL of this app, e.g. https://my-app.example.com
    host: str = "http://localhost:8080"
    api_version: str = DEFAULT_API_VERSION
    is_embedded: bool = True
    is_production: bool = False
    custom_shop_domains: Tuple[str, ...] = ()

    # Webhooks are signed with the app secret unless a dedicated secret is set.
    webhook_secret: str = ""
    state_secret: str = ""

    db_path: str = str(ROOT_DIR / "data" / "database.sqlite")
    sqlite_busy_timeout_ms: int = 3000
    frontend_dir: str = str(ROOT_DIR / "frontend" / "dist")

    billing: BillingSettings = field(default_factory=BillingSettings)

    klaviyo_public_key: str = ""
    klaviyo_track_url: str = KLAVIYO_TRACK_URL

    http_timeout_seconds: float = 10.0
    log_level: str = "INFO"
    metrics_enabled: bool = True
    port: int = 8080

    @property
    def app_url(self) -> str:
        return self.host.rstrip("/")

    @property
    def host_name(self) -> str:
        return self.app_url.split("://", 1)[-1]

    @property
    def effective_webhook_secret(self) -> str:
        return self.webhook_secret or self.api_secret

    @property
    def effective_state_secret(self) -> str:
        return self.state_secret or self.api_secret

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "AppConfig":
        # In managed platforms the variables are injected directly and this is a no-op.
        load_dotenv(env_file)

        custom_domain = _env("SHOP_CUSTOM_DOMAIN")
        try:
            interval = BillingInterval(_env("BILLING_INTERVAL", BillingInterval.ONE_TIME.value).upper())
        except ValueError:
            interval = BillingInterval.ONE_TIME
        billing = BillingSettings(
            required=_env_flag("BILLING_REQUIRED"),
            charge_name=_env("BILLING_CHARGE_NAME", "My Shopify One-Time Charge"),
            amount=_env_float("BILLING_AMOUNT", 5.0),
            currency_code=_env("BILLING_CURRENCY_CODE", "USD").upper(),
            interval=interval,
        )
        return cls(
            api_key=_env("SHOPIFY_API_KEY"),
            api_secret=_env("SHOPIFY_API_SECRET"),
            scopes=_split_scopes(_env("SCOPES", DEFAULT_SCOPES)),
            host=_env("HOST", f"http://localhost:{_env('PORT', '8080')}"),
            api_version=_env("SHOPIFY_API_VERSION", DEFAULT_API_VERSION),
            is_embedded=_env_flag("EMBEDDED_APP", "1"),
            is_production=_env("APP_ENV", "development").lower() == "production",
            custom_shop_domains=(custom_domain.lower(),) if custom_domain else (),
            webhook_secret=_env("SHOPIFY_WEBHOOK_SECRET"),
            state_secret=_env("OAUTH_STATE_SECRET"),
            db_path=_env("DB_PATH") or str(ROOT_DIR / "data" / "database.sqlite"),
            sqlite_busy_timeout_ms=int(_env_float("SQLITE_BUSY_TIMEOUT_MS", 3000)),
            frontend_dir=_env("FRONTEND_DIR") or str(ROOT_DIR / "frontend" / "dist"),
            billing=billing,
            klaviyo_public_key=_env("KLAVIYO_PUBLIC_KEY"),
            klaviyo_track_url=_env("KLAVIYO_TRACK_URL", KLAVIYO_TRACK_URL),
            http_timeout_seconds=max(0.5, _env_float("HTTP_TIMEOUT_SECONDS", 10.0)),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            metrics_enabled=_env_flag("METRICS_ENABLED", "1"),
            port=int(_env_float("PORT", 8080)),
        )
