"""
PostgreSQL Connection Manager - asyncpg pool for the chat store.

Provides:
- Connection pooling with jsonb decoded to Python objects
- Startup retries for a database that is still booting
- Degraded mode when PostgreSQL is unavailable (main.py then serves
  from the in-memory chat store)
- Health checks with throttled reconnects

Usage:
    from services.database import get_database

    db = await get_database()
    if db.available:
        store = PostgresChatStore(db)
"""

import asyncio
import json
import logging
import socket
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent.parent / "migrations" / "init.sql"

_TRANSIENT_MARKERS = (
    "the database system is starting up",
    "server closed the connection unexpectedly",
    "connection reset by peer",
    "timeout expired",
)


def classify_connect_error(error: BaseException) -> str:
    """Sort a pool-creation failure into dns / auth / transient / other.

    Only transient failures are worth retrying at startup.
    """
    if isinstance(error, socket.gaierror):
        return "dns"
    if isinstance(error, (asyncpg.InvalidPasswordError, asyncpg.InvalidAuthorizationSpecificationError)):
        return "auth"
    if isinstance(error, (asyncpg.CannotConnectNowError, ConnectionRefusedError, asyncio.TimeoutError)):
        return "transient"
    text = str(error).lower()
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return "transient"
    return "other"


async def _init_connection(conn) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


@dataclass
class DatabaseManager:
    """
    PostgreSQL connection manager.

    Query helpers raise StoreError; callers never see raw asyncpg errors.
    """

    url: str
    enabled: bool = True
    pool_min: int = 2
    pool_max: int = 10
    connect_retries: int = 15
    retry_delay_s: float = 2.0
    reconnect_interval_s: float = 30.0

    _pool: Optional[asyncpg.Pool] = field(default=None, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _last_reconnect_attempt: float = field(default=0.0, repr=False)
    _last_error: Optional[str] = field(default=None, repr=False)

    @property
    def available(self) -> bool:
        return self._pool is not None

    async def connect(self) -> bool:
        """Create the pool and apply the schema. False means degraded mode."""
        if not self.enabled:
            logger.info("PostgreSQL disabled by config, chat history will not be durable")
            return False

        async with self._lock:
            if self._pool is not None:
                return True

            for attempt in range(self.connect_retries + 1):
                try:
                    pool = await asyncpg.create_pool(
                        self.url,
                        min_size=self.pool_min,
                        max_size=self.pool_max,
                        command_timeout=30.0,
                        init=_init_connection,
                    )
                except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError, asyncio.TimeoutError) as e:
                    self._last_error = str(e)
                    kind = classify_connect_error(e)
                    if kind == "transient" and attempt < self.connect_retries:
                        if attempt == 0:
                            logger.info(
                                f"PostgreSQL not ready yet; retrying (max_retries={self.connect_retries}, "
                                f"delay={self.retry_delay_s:.1f}s)"
                            )
                        await asyncio.sleep(self.retry_delay_s)
                        continue
                    self._log_connect_failure(kind, e)
                    return False

                await self._apply_schema(pool)
                self._pool = pool
                self._last_error = None
                logger.info(f"PostgreSQL connected: pool={self.pool_min}-{self.pool_max}")
                return True
            return False

    def _log_connect_failure(self, kind: str, error: BaseException) -> None:
        if kind == "dns":
            logger.info("PostgreSQL host not resolvable; running degraded on the in-memory store")
        elif kind == "auth":
            logger.warning("PostgreSQL authentication failed; check the POSTGRES_* settings. Running degraded")
        else:
            logger.warning(f"PostgreSQL connection failed: {error}, running degraded")

    async def _apply_schema(self, pool: asyncpg.Pool) -> None:
        """Run migrations/init.sql. Every statement in it is idempotent."""
        if not SCHEMA_PATH.exists():
            logger.warning(f"{SCHEMA_PATH} not found, skipping schema check")
            return
        try:
            async with pool.acquire() as conn:
                await conn.execute(SCHEMA_PATH.read_text())
            logger.info("PostgreSQL schema verified")
        except asyncpg.PostgresError as e:
            logger.warning(f"Schema verification warning (non-fatal): {e}")

    async def disconnect(self) -> None:
        async with self._lock:
            if self._pool is None:
                return
            pool, self._pool = self._pool, None
            try:
                await pool.close()
            except (OSError, asyncpg.PostgresError) as e:
                logger.warning(f"Error closing PostgreSQL pool: {e}")

    async def health_check(self) -> Dict[str, Any]:
        """Status dict for /health. A degraded manager retries at most every reconnect_interval_s."""
        if self._pool is None and self.enabled:
            now = time.monotonic()
            if now - self._last_reconnect_attempt >= self.reconnect_interval_s:
                self._last_reconnect_attempt = now
                logger.info("Attempting PostgreSQL reconnection...")
                await self.connect()

        if self._pool is None:
            return {"status": "degraded", "mode": "memory", "error": self._last_error}

        start = time.monotonic()
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except (OSError, asyncpg.PostgresError) as e:
            self._last_error = str(e)
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"status": "error", "mode": "postgresql", "error": str(e)}

        return {
            "status": "connected",
            "mode": "postgresql",
            "latency_ms": round((time.monotonic() - start) * 1000, 2),
            "pool_size": self._pool.get_size(),
            "pool_free": self._pool.get_idle_size(),
        }

    # === Query Operations ===

    @asynccontextmanager
    async def _acquire(self, operation: str):
        if self._pool is None:
            raise StoreError("PostgreSQL unavailable", operation=operation)
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.error(f"PostgreSQL {operation} failed: {e}")
            raise StoreError(f"Database {operation} failed", details=str(e), operation=operation) from e

    async def execute(self, query: str, *args) -> str:
        """INSERT / UPDATE / DELETE. Returns the status string (e.g. "DELETE 1")."""
        async with self._acquire("execute") as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        async with self._acquire("fetch") as conn:
            return [dict(row) for row in await conn.fetch(query, *args)]

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        async with self._acquire("fetchrow") as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    async def fetchval(self, query: str, *args) -> Any:
        async with self._acquire("fetchval") as conn:
            return await conn.fetchval(query, *args)


_database_manager: Optional[DatabaseManager] = None
_init_lock = asyncio.Lock()


async def get_database() -> DatabaseManager:
    """Database manager singleton; connects on first call."""
    global _database_manager

    if _database_manager is None:
        async with _init_lock:
            if _database_manager is None:
                from config import runtime_config

                manager = DatabaseManager(
                    url=runtime_config.database_url,
                    enabled=runtime_config.database_enabled,
                    pool_min=runtime_config.database_pool_min,
                    pool_max=runtime_config.database_pool_max,
                    connect_retries=runtime_config.database_connect_retries,
                    retry_delay_s=runtime_config.database_retry_delay_s,
                )
                await manager.connect()
                _database_manager = manager

    return _database_manager


async def close_database() -> None:
    """Close the pool (call on shutdown)."""
    global _database_manager
    if _database_manager:
        await _database_manager.disconnect()
        _database_manager = None
