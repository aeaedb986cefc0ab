"""Database connection management and schema for the checkout engine."""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
from asyncpg import Pool

logger = logging.getLogger(__name__)


def normalize_dsn(database_url: str) -> str:
    """Convert postgres:// to postgresql:// (Heroku/Railway style)."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


class Database:
    """PostgreSQL connection pool manager."""

    _pool: Optional[Pool] = None
    _dsn: Optional[str] = None

    @classmethod
    def configure(cls, dsn: str) -> None:
        """Set the DSN used when the pool is first created."""
        cls._dsn = normalize_dsn(dsn)

    @classmethod
    async def get_pool(cls) -> Pool:
        """Get or create the connection pool."""
        if cls._pool is None:
            database_url = cls._dsn or normalize_dsn(
                os.getenv("CRAFTLOCAL_DATABASE_URL")
                or os.getenv("DATABASE_URL", "postgresql://localhost/craftlocal")
            )
            cls._pool = await asyncpg.create_pool(
                database_url,
                min_size=2,
                max_size=10,
                command_timeout=60,
            )
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        """Close the connection pool."""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None

    @classmethod
    @asynccontextmanager
    async def connection(cls) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection from the pool."""
        pool = await cls.get_pool()
        async with pool.acquire() as conn:
            yield conn

    @classmethod
    @asynccontextmanager
    async def transaction(cls) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection with an active transaction."""
        async with cls.connection() as conn:
            async with conn.transaction():
                yield conn


async def init_database() -> None:
    """Initialize database schema.

    In production, expects migrations to have been applied already.
    In dev/test, runs SCHEMA_SQL directly.
    """
    env = os.getenv("CRAFTLOCAL_ENVIRONMENT", "dev")
    async with Database.connection() as conn:
        if env in ("prod", "production"):
            exists = await conn.fetchval("SELECT to_regclass('escrow_records') IS NOT NULL")
            if not exists:
                raise RuntimeError(
                    "escrow_records table not found. Apply migrations before starting."
                )
            logger.info("Database schema verified")
        else:
            await conn.execute(SCHEMA_SQL)
            logger.info("Database schema initialized")


SCHEMA_SQL = """
-- =============================================================================
-- Craft Local checkout schema
-- =============================================================================

-- Canonical pricing store (listing table of record)
CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    seller_id TEXT NOT NULL,
    title TEXT NOT NULL,
    price NUMERIC(12,2) NOT NULL CHECK (price >= 0),
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    inventory_count INTEGER CHECK (inventory_count IS NULL OR inventory_count >= 0),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- Seller payout accounts
CREATE TABLE IF NOT EXISTS seller_accounts (
    seller_id TEXT PRIMARY KEY,
    connect_account_id TEXT UNIQUE,
    charges_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    payouts_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- Checkout intents, the durable record of what was charged
CREATE TABLE IF NOT EXISTS checkout_intents (
    intent_id TEXT PRIMARY KEY,
    processor_session_id TEXT UNIQUE,
    metadata_blob TEXT NOT NULL,
    signature VARCHAR(64) NOT NULL,
    total_cents BIGINT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- Orders; one per (processor reference, seller)
CREATE TABLE IF NOT EXISTS orders (
    order_id TEXT PRIMARY KEY,
    processor_ref TEXT NOT NULL,
    intent_id TEXT,
    buyer_id TEXT,
    seller_id TEXT NOT NULL,
    lines JSONB NOT NULL,
    subtotal_cents BIGINT NOT NULL,
    platform_fee_cents BIGINT NOT NULL,
    total_cents BIGINT NOT NULL,
    fulfillment_method VARCHAR(20) NOT NULL,
    payment_status VARCHAR(20) NOT NULL,
    shipping_address JSONB,
    notes TEXT,
    customer_email TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (processor_ref, seller_id)
);

CREATE INDEX IF NOT EXISTS idx_orders_processor_ref ON orders(processor_ref);
ALTER TABLE orders ADD COLUMN IF NOT EXISTS customer_email TEXT;

-- Escrow ledger
CREATE TABLE IF NOT EXISTS escrow_records (
    order_id TEXT PRIMARY KEY,
    payment_intent_ref TEXT UNIQUE NOT NULL,
    seller_id TEXT NOT NULL,
    buyer_id TEXT,
    seller_amount BIGINT NOT NULL,
    platform_fee BIGINT NOT NULL,
    state VARCHAR(20) NOT NULL,
    payout_destination TEXT,
    destination_charge BOOLEAN NOT NULL DEFAULT FALSE,
    authorized_at TIMESTAMPTZ,
    release_due_at TIMESTAMPTZ,
    release_claimed_at TIMESTAMPTZ,
    captured_at TIMESTAMPTZ,
    released_at TIMESTAMPTZ,
    transfer_ref TEXT,
    closed_at TIMESTAMPTZ,
    close_reason TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_escrow_due
    ON escrow_records(release_due_at)
    WHERE state IN ('authorized', 'captured');

-- Order reminders; unique per order and type
CREATE TABLE IF NOT EXISTS order_reminders (
    reminder_id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    reminder_type VARCHAR(32) NOT NULL,
    recipient_id TEXT NOT NULL,
    scheduled_for TIMESTAMPTZ NOT NULL,
    delivered BOOLEAN NOT NULL DEFAULT FALSE,
    delivered_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (order_id, reminder_type)
);

CREATE INDEX IF NOT EXISTS idx_reminders_pending
    ON order_reminders(scheduled_for)
    WHERE delivered = FALSE;
"""
