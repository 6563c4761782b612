"""Request-scoped context and logging setup."""

from .context import get_request_id, get_shop, reset_request_id, reset_shop, set_request_id, set_shop
from .logging import configure_logging

__all__ = [
    "configure_logging",
    "get_request_id",
    "get_shop",
    "reset_request_id",
    "reset_shop",
    "set_request_id",
    "set_shop",
]
