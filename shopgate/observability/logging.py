from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

Getter = Callable[[], Optional[str]]


def _none() -> Optional[str]:
    return None


class _ContextFilter(logging.Filter):
    """Stamp every record with the request-scoped fields named in `getters`."""

    def __init__(self, getters: Dict[str, Getter]) -> None:
        super().__init__()
        self._getters = dict(getters)

    def filter(self, record: logging.LogRecord) -> bool:
        # Formatters can always reference the fields, even outside a request.
        for name, getter in self._getters.items():
            setattr(record, name, getter())
        return True


def configure_logging(
    *,
    level: str = "INFO",
    request_id_getter: Optional[Getter] = None,
    shop_getter: Optional[Getter] = None,
) -> None:
    """Configure root logging with consistent contextual fields."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    # If something already configured handlers (uvicorn, pytest), avoid duplicating them.
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s "
                "request_id=%(request_id)s shop=%(shop)s "
                "%(message)s"
            )
        )
        root.addHandler(handler)

    getters: Dict[str, Getter] = {
        "request_id": request_id_getter or _none,
        "shop": shop_getter or _none,
    }
    # Attach the context filter once, to the handlers (root filters do not see child loggers).
    for handler in root.handlers:
        if not any(isinstance(f, _ContextFilter) for f in handler.filters):
            handler.addFilter(_ContextFilter(getters))

    logging.getLogger("httpx").setLevel(logging.WARNING)
