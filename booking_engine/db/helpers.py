# booking_engine/db/helpers.py
"""
Database helper functions for common patterns.
Reduces boilerplate in the repository layer.
"""

import asyncio
import functools
from typing import Any

import psycopg

from booking_engine.db.pool import DatabasePoolManager
from booking_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# SQLSTATE codes the repositories care about
EXCLUSION_VIOLATION = "23P01"
UNIQUE_VIOLATION = "23505"


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        recoverable: bool = True,
        sqlstate: str | None = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable
        self.sqlstate = sqlstate


def _wrap(e: psycopg.Error, operation: str) -> DatabaseError:
    return DatabaseError(
        f"Query failed: {e}",
        operation=operation,
        recoverable=isinstance(e, psycopg.OperationalError),
        sqlstate=getattr(e, "sqlstate", None),
    )


async def fetch_one(
    db: DatabasePoolManager,
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        db: Pool manager used when no connection is supplied
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection (e.g. inside a transaction)

    Returns:
        Dict with row data or None if no results
    """
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

        async with db.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise _wrap(e, "fetch_one") from e


async def fetch_all(
    db: DatabasePoolManager,
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

        async with db.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise _wrap(e, "fetch_all") from e


async def fetch_val(
    db: DatabasePoolManager,
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> Any:
    """Execute query and return the first column of the first row."""
    row = await fetch_one(db, query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    db: DatabasePoolManager,
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> int:
    """
    Execute query and return number of affected rows.

    Args:
        db: Pool manager used when no connection is supplied
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        Number of affected rows
    """
    try:
        if connection:
            cursor = await connection.execute(query, params)
            return cursor.rowcount

        async with db.connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise _wrap(e, "execute") from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Decorator to retry database operations on temporary failures.

    Only DatabaseError(recoverable=True), i.e. wrapped OperationalErrors,
    are retried. Constraint violations surface immediately.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries (exponential backoff)
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except DatabaseError as e:
                    if not e.recoverable or attempt >= max_retries:
                        if e.recoverable:
                            logger.error(
                                "Database operation failed after all retries",
                                operation=func.__name__,
                                attempts=attempt + 1,
                                error=str(e),
                            )
                        raise

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

        return wrapper

    return decorator
