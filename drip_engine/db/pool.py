"""
PostgreSQL connection pool shared by the API and the worker processes.

Connections are autocommit with dict rows. Repositories go through the
helpers in ``drip_engine.db.helpers``; multi-statement work such as
applying the schema uses ``transaction()``.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from drip_engine.config import settings
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0


class DatabasePoolManager:
    """Owns the pool lifecycle: opened on startup, closed on shutdown."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def initialized(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        logger.info(
            "Initializing database connection pool",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            environment=settings.environment,
        )

        self.pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )

        try:
            await self.pool.open()
            await self.pool.wait()
            self._initialized = True
            await self._probe()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self._initialized = False
            await self.pool.close()
            self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool initialized")

    @staticmethod
    async def _configure_connection(conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)

        app_name = f"drip-engine-{settings.environment}"
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '60s'")

    async def _probe(self) -> float:
        """Round-trip a trivial query; returns the latency in milliseconds."""
        start_time = time.time()
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database probe returned an unexpected result")
        return round((time.time() - start_time) * 1000, 2)

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return

        logger.info("Closing database connection pool")
        self._initialized = False
        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
            return

        logger.info("Database pool closed")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        if self._closed:
            raise RuntimeError("Database pool is closed")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection inside a transaction: commit on success, rollback on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        if not self.initialized:
            error = "Pool is closed" if self._closed else "Pool not initialized"
            return {"healthy": False, "error": error, "service": "database_pool"}

        try:
            latency_ms = await self._probe()
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "service": "database_pool",
            "connection_time_ms": latency_ms,
            "pool_stats": {
                "pool_size": stats.get("pool_size", 0),
                "pool_available": stats.get("pool_available", 0),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    """Get database pool health status."""
    return await db_pool.health_check()
