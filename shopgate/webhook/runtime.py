from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Optional, Set

if TYPE_CHECKING:
    from ..db import AppInstallations
    from ..forwarder import FulfillmentForwarder

logger = logging.getLogger(__name__)


class WebhookState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    ROUTED = "routed"
    HANDLED = "handled"
    REJECTED = "rejected"


@dataclass
class WebhookRuntime:
    # Core dependencies (injected from shopgate.main.create_app)
    installations: "AppInstallations"
    forwarder: "FulfillmentForwarder"
    secret: str

    # Detached work spawned by handlers (forwarding). Held here so tasks are not
    # garbage-collected mid-flight and can be drained on shutdown.
    tasks: Set["asyncio.Task[Any]"] = field(default_factory=set)

    def spawn(self, coro: Awaitable[Any], *, name: Optional[str] = None) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self.tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight background tasks (used on shutdown and in tests)."""
        pending = list(self.tasks)
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("%d background task(s) still running after drain", len(still_pending))
