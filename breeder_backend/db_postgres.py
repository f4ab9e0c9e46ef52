"""
PostgreSQL Database Connection Module with Async Support

This module provides the async PostgreSQL connection pool, the schema used by
the PostgreSQL transfer implementation, and a connection context manager.
"""

import asyncpg
from typing import Optional
import logging
from .config import DATABASE_URL, DB_POOL_MIN_SIZE, DB_POOL_MAX_SIZE, DB_TIMEOUT

logger = logging.getLogger(__name__)

# Global connection pool
_pool: Optional[asyncpg.Pool] = None


async def init_db_pool(database_url: Optional[str] = None):
    """
    Initialize the PostgreSQL connection pool.
    Should be called on application startup.
    """
    global _pool

    if _pool is not None:
        logger.warning("Database pool already initialized")
        return

    url = database_url or DATABASE_URL
    try:
        _pool = await asyncpg.create_pool(
            url,
            min_size=DB_POOL_MIN_SIZE,
            max_size=DB_POOL_MAX_SIZE,
            command_timeout=DB_TIMEOUT,
            # SSL settings for Neon DB
            ssl='require' if 'neon' in url else None
        )
        logger.info(f"PostgreSQL connection pool initialized (min={DB_POOL_MIN_SIZE}, max={DB_POOL_MAX_SIZE})")
    except Exception as e:
        logger.error(f"Failed to initialize database pool: {e}")
        raise


async def close_db_pool():
    """
    Close the PostgreSQL connection pool.
    Should be called on application shutdown.
    """
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("PostgreSQL connection pool closed")


def get_pool() -> asyncpg.Pool:
    """
    Get the global connection pool.
    Raises an error if pool is not initialized.
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_db_pool() first.")
    return _pool


class DatabaseConnection:
    """
    Context manager for pooled database connections.

    Usage:
        async with DatabaseConnection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("SELECT * FROM transfers WHERE id = $1 FOR UPDATE", id)
    """

    def __init__(self):
        self.connection: Optional[asyncpg.Connection] = None
        self.pool = get_pool()

    async def __aenter__(self) -> asyncpg.Connection:
        self.connection = await self.pool.acquire()
        return self.connection

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Release connection back to pool"""
        if self.connection:
            await self.pool.release(self.connection)
            self.connection = None


async def health_check() -> dict:
    """
    Check database connection health.
    Returns dict with status and details.
    """
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            if result == 1:
                return {
                    "status": "healthy",
                    "database": "postgresql",
                    "pool_size": pool.get_size(),
                    "pool_free": pool.get_idle_size()
                }
            else:
                return {
                    "status": "unhealthy",
                    "database": "postgresql",
                    "error": "Unexpected query result"
                }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": "postgresql",
            "error": str(e)
        }


POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS counters (
        name TEXT PRIMARY KEY,
        seq BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id BIGSERIAL PRIMARY KEY,
        id_public TEXT NOT NULL UNIQUE,
        auth_uid TEXT UNIQUE,
        email TEXT,
        display_name TEXT,
        breeder_name TEXT,
        show_remarks_public BOOLEAN NOT NULL DEFAULT FALSE,
        show_genetic_code_public BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS animals (
        id BIGSERIAL PRIMARY KEY,
        id_public TEXT NOT NULL UNIQUE,
        owner_id BIGINT NOT NULL REFERENCES accounts (id),
        owner_id_public TEXT NOT NULL,
        original_owner_id BIGINT REFERENCES accounts (id),
        sold_status TEXT CHECK (sold_status IS NULL OR sold_status IN ('sold', 'purchased')),
        is_public BOOLEAN NOT NULL DEFAULT FALSE,
        include_remarks BOOLEAN NOT NULL DEFAULT FALSE,
        include_genetic_code BOOLEAN NOT NULL DEFAULT FALSE,
        section_privacy JSONB NOT NULL DEFAULT '{}'::jsonb,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS animal_view_grants (
        animal_id BIGINT NOT NULL REFERENCES animals (id),
        account_id BIGINT NOT NULL REFERENCES accounts (id),
        granted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        hidden BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (animal_id, account_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_animals (
        account_id BIGINT NOT NULL REFERENCES accounts (id),
        animal_id BIGINT NOT NULL REFERENCES animals (id),
        added_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (account_id, animal_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS public_animals (
        id BIGSERIAL PRIMARY KEY,
        id_public TEXT NOT NULL UNIQUE,
        owner_id_public TEXT NOT NULL,
        document JSONB NOT NULL,
        content_hash TEXT NOT NULL,
        projected_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfers (
        id BIGSERIAL PRIMARY KEY,
        from_user_id BIGINT NOT NULL REFERENCES accounts (id),
        to_user_id BIGINT NOT NULL REFERENCES accounts (id),
        animal_id_public TEXT NOT NULL,
        transfer_type TEXT NOT NULL CHECK (transfer_type IN ('sale', 'purchase')),
        offer_view_only BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'accepted', 'declined')),
        transaction_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        responded_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfer_events (
        id BIGSERIAL PRIMARY KEY,
        event_id UUID NOT NULL UNIQUE,
        transfer_id BIGINT,
        animal_id_public TEXT NOT NULL,
        event_type TEXT NOT NULL,
        event_version INTEGER NOT NULL DEFAULT 1,
        payload JSONB NOT NULL,
        metadata JSONB NOT NULL,
        account_id BIGINT,
        event_time TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL,
        type TEXT NOT NULL,
        message TEXT NOT NULL DEFAULT '',
        status TEXT,
        transfer_id BIGINT,
        animal_id_public TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_animals_owner ON animals(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_public_animals_owner ON public_animals(owner_id_public)",
    "CREATE INDEX IF NOT EXISTS idx_transfers_from ON transfers(from_user_id)",
    "CREATE INDEX IF NOT EXISTS idx_transfers_to ON transfers(to_user_id)",
    "CREATE INDEX IF NOT EXISTS idx_transfer_events_transfer ON transfer_events(transfer_id)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_pending_transfer
    ON transfers(animal_id_public, to_user_id) WHERE status = 'pending'
    """,
]


async def init_schema():
    """Create tables and indexes. Safe to run on every startup."""
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            for statement in POSTGRES_SCHEMA:
                await conn.execute(statement)
    logger.info("PostgreSQL schema ready")
