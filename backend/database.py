"""
Database connection management using asyncpg.

Provides connection pooling and helper methods for the export job table
and the task records that exports read from.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg

from config import settings

logger = logging.getLogger(__name__)


class Database:
    """
    Async PostgreSQL database connection manager using asyncpg.

    Usage:
        db = Database()
        await db.connect()

        async with db.acquire() as conn:
            result = await conn.fetch("SELECT * FROM export_jobs")

        await db.disconnect()
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.database_url
        self._pool: Optional[asyncpg.Pool] = None
        # Health snapshot cache so /health does not probe the DB on every call.
        self._health_cache_ttl = 15.0
        self._health_checked_at = 0.0
        self._health_ok = False
        self._health_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if database is connected."""
        return self._pool is not None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raise if not connected."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    async def connect(
        self,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 60.0,
    ) -> None:
        """
        Create connection pool.

        Args:
            min_size: Minimum pool connections
            max_size: Maximum pool connections. Each running export holds one
                connection for the lifetime of its cursor, so keep this above
                the worker pool size.
            command_timeout: Default query timeout in seconds
        """
        if self._pool is not None:
            logger.warning("Database already connected")
            return

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=command_timeout,
                max_inactive_connection_lifetime=300.0,
            )
            logger.info(f"Database connected (pool: {min_size}-{max_size})")
            self._health_checked_at = 0.0
        except Exception as e:
            # DSN is not logged
            logger.error(f"Failed to connect to database: {type(e).__name__}: {e}")
            raise RuntimeError("Database connection failed") from e

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._health_checked_at = time.monotonic()
            self._health_ok = False
            logger.info("Database disconnected")

    async def health_check(self, force_refresh: bool = False) -> bool:
        """Return cached DB reachability, refreshing it at most every 15s."""
        now = time.monotonic()
        if not force_refresh and now - self._health_checked_at < self._health_cache_ttl:
            return self._health_ok

        async with self._health_lock:
            now = time.monotonic()
            if not force_refresh and now - self._health_checked_at < self._health_cache_ttl:
                return self._health_ok

            if self._pool is None:
                self._health_ok = False
            else:
                try:
                    async with self.acquire() as conn:
                        self._health_ok = await conn.fetchval("SELECT 1") == 1
                except Exception as e:
                    logger.error(f"Database health check failed: {type(e).__name__}")
                    self._health_ok = False
            self._health_checked_at = now
            return self._health_ok

    @asynccontextmanager
    async def acquire(self):
        """
        Acquire a connection from the pool.

        Usage:
            async with db.acquire() as conn:
                await conn.fetch("SELECT * FROM table")
        """
        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """
        Acquire a connection and start a transaction.

        Server-side cursors only live inside a transaction, so record
        streaming goes through this.
        """
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def execute(self, query: str, *args) -> str:
        """Execute a query and return status."""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> list[asyncpg.Record]:
        """Fetch all rows from a query."""
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row from a query."""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args) -> Any:
        """Fetch a single value from a query."""
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)


# Global database instance
db = Database()


async def init_db() -> None:
    """Initialize database connection (call on startup)."""
    await db.connect()
    logger.info("Database initialized")


async def close_db() -> None:
    """Close database connection (call on shutdown)."""
    await db.disconnect()
    logger.info("Database closed")
