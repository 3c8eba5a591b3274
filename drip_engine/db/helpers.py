"""
Query helpers shared by the repositories.

Every helper borrows a pooled connection (autocommit, dict rows) and turns
psycopg errors into ``DatabaseError`` so callers can tell a dropped
connection from a bad statement.
"""

import asyncio
import functools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from drip_engine.db.pool import db_pool
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def _database_error(error: psycopg.Error, operation: str) -> DatabaseError:
    # Only connection-level failures are worth retrying
    recoverable = isinstance(error, psycopg.OperationalError)
    return DatabaseError(f"Query failed: {error}", operation=operation, recoverable=recoverable)


@asynccontextmanager
async def _cursor(operation: str, query: str) -> AsyncIterator[psycopg.AsyncCursor]:
    try:
        async with db_pool.connection() as conn:
            async with conn.cursor() as cur:
                yield cur
    except psycopg.Error as e:
        logger.error("Database query failed", operation=operation, query=query[:100], error=str(e))
        raise _database_error(e, operation) from e


async def fetch_one(query: str, params: tuple = ()) -> dict[str, Any] | None:
    """Run a query and return its first row, or None."""
    async with _cursor("fetch_one", query) as cur:
        await cur.execute(query, params)
        return await cur.fetchone()


async def fetch_all(query: str, params: tuple = ()) -> list[dict[str, Any]]:
    """Run a query and return every row. Works for UPDATE ... RETURNING too."""
    async with _cursor("fetch_all", query) as cur:
        await cur.execute(query, params)
        return await cur.fetchall()


async def fetch_val(query: str, params: tuple = ()) -> Any:
    """Run a query and return the first column of the first row."""
    async with _cursor("fetch_val", query) as cur:
        await cur.execute(query, params)
        row = await cur.fetchone()
        return next(iter(row.values())) if row else None


async def execute_query(query: str, params: tuple = ()) -> int:
    """Run a statement and return the affected row count."""
    async with _cursor("execute", query) as cur:
        await cur.execute(query, params)
        return cur.rowcount


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Decorator to retry database operations on temporary failures.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries (exponential backoff)
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except DatabaseError as e:
                    if not e.recoverable:
                        # Permanent failures (integrity, data, syntax) - don't retry
                        raise

                    last_exception = e
                    if attempt < max_retries:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            "Database operation failed, retrying",
                            operation=func.__name__,
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e),
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=max_retries + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e

            raise last_exception

        return wrapper

    return decorator
