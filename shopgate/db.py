from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS shopify_sessions (
        id TEXT PRIMARY KEY,
        shop TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT '',
        is_online INTEGER NOT NULL DEFAULT 0,
        scope TEXT NOT NULL DEFAULT '',
        access_token TEXT NOT NULL DEFAULT '',
        expires INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_shopify_sessions_shop ON shopify_sessions (shop)",
    """
    CREATE TABLE IF NOT EXISTS app_installations (
        shop TEXT PRIMARY KEY,
        installed_at TEXT NOT NULL
    )
    """,
)


def offline_session_id(shop: str) -> str:
    return f"offline_{shop}"


def _scope_set(raw: Iterable[str] | str) -> set[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    return {s.strip() for s in raw if s and s.strip()}


def scopes_satisfied(required: Iterable[str] | str, granted: Iterable[str] | str) -> bool:
    """True when every required scope is granted; write_x implies read_x."""
    have = _scope_set(granted)
    for scope in _scope_set(required):
        if scope in have:
            continue
        if scope.startswith("read_") and f"write_{scope[5:]}" in have:
            continue
        if scope.startswith("unauthenticated_read_") and f"unauthenticated_write_{scope[21:]}" in have:
            continue
        return False
    return True


@dataclass
class Session:
    id: str
    shop: str
    state: str = ""
    is_online: bool = False
    scope: str = ""
    access_token: str = ""
    # Unix timestamp; None for offline tokens, which never expire.
    expires: Optional[int] = None
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires is None:
            return False
        ts = (now or datetime.now(timezone.utc)).timestamp()
        return ts >= float(self.expires)

    def is_active(self, required_scopes: Iterable[str] | str = ()) -> bool:
        return bool(self.access_token) and not self.is_expired() and scopes_satisfied(required_scopes, self.scope)

    @classmethod
    def from_row(cls, row) -> "Session":
        return cls(
            id=row["id"],
            shop=row["shop"],
            state=row["state"] or "",
            is_online=bool(row["is_online"]),
            scope=row["scope"] or "",
            access_token=row["access_token"] or "",
            expires=row["expires"],
        )


class DatabaseManager:
    """Owns the SQLite file; every operation opens a short-lived connection."""

    def __init__(self, db_path: str, *, busy_timeout_ms: int = 3000):
        self.db_path = db_path
        self.busy_timeout_ms = int(busy_timeout_ms)
        if db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[aiosqlite.Connection]:
        # `timeout` bounds how long SQLite waits for the write lock held by another request.
        timeout_s = max(0.1, float(self.busy_timeout_ms) / 1000.0)
        async with aiosqlite.connect(self.db_path, timeout=timeout_s, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield db

    @asynccontextmanager
    async def _write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Connection inside a BEGIN IMMEDIATE transaction.

        Taking the write lock up front lets concurrent writers wait on busy_timeout
        instead of failing a SHARED -> RESERVED upgrade with "database is locked".
        """
        async with self._conn() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def init_db(self) -> None:
        async with self._write() as db:
            for stmt in _SCHEMA:
                await db.execute(stmt)
        logger.info("Database ready at %s", self.db_path)

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /health)."""
        try:
            async with self._conn() as db:
                cur = await db.execute("SELECT 1")
                row = await cur.fetchone()
                return bool(row[0]) if row else False
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False


class SessionStorage:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def store_session(self, session: Session) -> None:
        async with self.db._write() as db:
            await db.execute(
                """
                INSERT INTO shopify_sessions (id, shop, state, is_online, scope, access_token, expires)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    shop = excluded.shop,
                    state = excluded.state,
                    is_online = excluded.is_online,
                    scope = excluded.scope,
                    access_token = excluded.access_token,
                    expires = excluded.expires
                """,
                (
                    session.id,
                    session.shop,
                    session.state,
                    int(session.is_online),
                    session.scope,
                    session.access_token,
                    session.expires,
                ),
            )

    async def load_session(self, session_id: str) -> Optional[Session]:
        async with self.db._conn() as db:
            cur = await db.execute("SELECT * FROM shopify_sessions WHERE id = ?", (session_id,))
            row = await cur.fetchone()
        return Session.from_row(row) if row else None

    async def find_sessions_by_shop(self, shop: str) -> List[Session]:
        async with self.db._conn() as db:
            cur = await db.execute(
                "SELECT * FROM shopify_sessions WHERE shop = ? ORDER BY rowid",
                (shop,),
            )
            rows = await cur.fetchall()
        return [Session.from_row(r) for r in rows]

    async def delete_session(self, session_id: str) -> bool:
        async with self.db._write() as db:
            cur = await db.execute("DELETE FROM shopify_sessions WHERE id = ?", (session_id,))
            return (cur.rowcount or 0) > 0

    async def delete_sessions_by_shop(self, shop: str) -> int:
        async with self.db._write() as db:
            cur = await db.execute("DELETE FROM shopify_sessions WHERE shop = ?", (shop,))
            return max(0, cur.rowcount or 0)


class AppInstallations:
    """Durable set of installed shops."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def includes(self, shop: str) -> bool:
        async with self.db._conn() as db:
            cur = await db.execute("SELECT 1 FROM app_installations WHERE shop = ?", (shop,))
            row = await cur.fetchone()
        return row is not None

    async def add(self, shop: str) -> bool:
        """Record an install; returns False when the shop was already installed."""
        async with self.db._write() as db:
            cur = await db.execute(
                "INSERT INTO app_installations (shop, installed_at) VALUES (?, ?) ON CONFLICT(shop) DO NOTHING",
                (shop, datetime.now(timezone.utc).isoformat()),
            )
            return (cur.rowcount or 0) > 0

    async def installed_at(self, shop: str) -> Optional[str]:
        async with self.db._conn() as db:
            cur = await db.execute("SELECT installed_at FROM app_installations WHERE shop = ?", (shop,))
            row = await cur.fetchone()
        return row["installed_at"] if row else None

    async def delete(self, shop: str) -> bool:
        """Remove the installation and its sessions.

        Deleting a shop that is not installed is a no-op; returns whether a row was removed.
        """
        async with self.db._write() as db:
            cur = await db.execute("DELETE FROM app_installations WHERE shop = ?", (shop,))
            removed = (cur.rowcount or 0) > 0
            await db.execute("DELETE FROM shopify_sessions WHERE shop = ?", (shop,))
        if removed:
            logger.info("Removed installation for %s", shop)
        return removed
