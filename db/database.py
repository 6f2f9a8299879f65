"""
Database connection management with connection pooling.

Calculation runs, line items and approval transitions all go through the
pooled connections handed out by get_db_connection(): a connection commits
when the block exits cleanly and rolls back on any exception, so a run is
either fully persisted or not at all.
"""

import os
import logging
from contextlib import contextmanager
from typing import Optional

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

# Global connection pool
_connection_pool: Optional[pool.ThreadedConnectionPool] = None


def _connection_options() -> dict:
    """Connection keyword arguments, overridable from the environment."""
    statement_timeout_ms = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "60000"))
    return {
        "sslmode": os.getenv("DB_SSLMODE", "prefer"),
        "connect_timeout": int(os.getenv("DB_CONNECT_TIMEOUT", "10")),
        "keepalives": 1,
        "keepalives_idle": 30,
        "keepalives_interval": 10,
        "keepalives_count": 5,
        # Long calculation runs insert many line items in one transaction
        "options": f"-c statement_timeout={statement_timeout_ms}",
    }


def init_connection_pool(
    min_connections: int = 1,
    max_connections: int = 5,
    database_url: Optional[str] = None
) -> None:
    """
    Initialize the database connection pool.

    Args:
        min_connections: Minimum number of connections to maintain
        max_connections: Maximum number of connections allowed
        database_url: PostgreSQL connection string (defaults to DATABASE_URL env var)

    Raises:
        ValueError: If DATABASE_URL not provided and not in environment
        psycopg2.Error: If connection pool cannot be created
    """
    global _connection_pool

    if _connection_pool is not None:
        logger.warning("Connection pool already initialized")
        return

    db_url = database_url or os.getenv("DATABASE_URL")
    if not db_url:
        raise ValueError(
            "DATABASE_URL not found. Set it in .env file or pass as parameter."
        )

    try:
        _connection_pool = pool.ThreadedConnectionPool(
            min_connections,
            max_connections,
            db_url,
            **_connection_options()
        )
        logger.info(
            f"Database connection pool initialized: "
            f"min={min_connections}, max={max_connections}"
        )
    except psycopg2.Error as e:
        logger.error(f"Failed to create connection pool: {e}")
        raise


def close_connection_pool() -> None:
    """
    Close all connections in the pool and cleanup resources.

    Should be called when application shuts down.
    """
    global _connection_pool

    if _connection_pool is not None:
        _connection_pool.closeall()
        _connection_pool = None
        logger.info("Database connection pool closed")


@contextmanager
def get_db_connection(dict_cursor: bool = True):
    """
    Get a database connection from the pool (context manager).

    Usage:
        with get_db_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT * FROM royalty_calculation WHERE id = %s", (42,))
                row = cursor.fetchone()

    Args:
        dict_cursor: If True, use RealDictCursor to return rows as dictionaries

    Yields:
        psycopg2.connection: Database connection

    Raises:
        RuntimeError: If connection pool not initialized
        psycopg2.Error: If database operation fails
    """
    if _connection_pool is None:
        raise RuntimeError(
            "Connection pool not initialized. Call init_connection_pool() first."
        )

    conn = None
    original_factory = None
    try:
        conn = _connection_pool.getconn()

        # Replace connections the server has already closed
        if conn.closed:
            logger.warning("Stale connection detected, getting fresh connection")
            _connection_pool.putconn(conn, close=True)
            conn = _connection_pool.getconn()

        if dict_cursor:
            original_factory = conn.cursor_factory
            conn.cursor_factory = RealDictCursor

        yield conn

        conn.commit()

    except Exception as e:
        if conn and not conn.closed:
            conn.rollback()
        logger.error(f"Database operation failed: {e}")
        raise

    finally:
        if conn:
            if dict_cursor:
                conn.cursor_factory = original_factory
            _connection_pool.putconn(conn)


def health_check() -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if database is accessible, False otherwise
    """
    try:
        with get_db_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                result = cursor.fetchone()
                return result is not None
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
