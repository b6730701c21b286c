import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: database readiness flag
# ====================================================================================
# True only after the pool is created and migrations are applied.
# /health reports it; the webhook answers 500 while it is False.
# ====================================================================================
DB_READY: bool = False


# ====================================================================================
# UTC HELPERS: DB boundary - TIMESTAMP WITHOUT TIME ZONE requires naive UTC
# ====================================================================================
# Schema uses TIMESTAMP (without time zone). Application layer uses aware UTC.
# STRICT RULE: all datetime passed TO asyncpg → _to_db_utc. All datetime read FROM DB → _from_db_utc.
# ====================================================================================

def _to_db_utc(dt: datetime) -> datetime:
    """
    Convert aware UTC datetime to naive UTC for DB storage.
    Must raise if dt is not timezone-aware UTC.
    """
    if dt is None:
        return None
    assert dt.tzinfo == timezone.utc, f"Expected UTC, got tzinfo={dt.tzinfo}"
    return dt.replace(tzinfo=None)


def _from_db_utc(dt: datetime) -> datetime:
    """
    Convert naive DB datetime to aware UTC.
    DB TIMESTAMP columns return naive datetime (stored as UTC).
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def _normalize_row(row: Optional[asyncpg.Record], *datetime_keys: str) -> Optional[Dict[str, Any]]:
    """Record -> dict with the given datetime columns converted to aware UTC."""
    if row is None:
        return None
    d = dict(row)
    for k in datetime_keys:
        if d.get(k) is not None:
            d[k] = _from_db_utc(d[k])
    return d


# ====================================================================================
# DB POOL CONFIG - ENV-overridable, single source of truth
# ====================================================================================
def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "1")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "10")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
    }


# Глобальный пул соединений
_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Return the initialized pool.

    Raises:
        RuntimeError: init_db() has not completed
    """
    if _pool is None:
        raise RuntimeError("Database pool is not initialized")
    return _pool


async def close_pool():
    """Закрыть пул соединений"""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


async def init_db(database_url: str) -> bool:
    """
    Create the pool and apply migrations.

    Safe to call repeatedly: returns immediately once DB_READY is set.

    Args:
        database_url: Postgres DSN

    Returns:
        True if the database is ready, False otherwise
    """
    global DB_READY, _pool

    if DB_READY:
        logger.info("Database already initialized (DB_READY=True), skipping init")
        return True

    if not database_url:
        logger.error("DATABASE_URL not configured")
        return False

    pool_config = _get_pool_config()
    try:
        _pool = await retry_async(
            lambda: asyncpg.create_pool(database_url, **pool_config),
            retries=1,
            base_delay=0.5,
            max_delay=5.0,
            retry_on=(asyncpg.PostgresError, OSError, asyncio.TimeoutError),
        )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    except Exception as e:
        logger.error(f"Failed to create database pool: {e}")
        return False

    # Yield before migrations so startup probes are served
    await asyncio.sleep(0)

    try:
        import migrations
        migrations_success = await migrations.run_migrations_safe(_pool)
        if not migrations_success:
            logger.error("Migration execution failed")
            return False
        logger.info("Database migrations applied successfully")
    except Exception as e:
        logger.error(f"Migration execution failed: {e}")
        return False

    DB_READY = True
    logger.info("DB_READY=True")
    return True


@asynccontextmanager
async def acquire(conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
    """Use the given connection, or acquire one from the pool."""
    if conn is not None:
        yield conn
        return
    pool = await get_pool()
    async with pool.acquire() as acquired:
        yield acquired


@asynccontextmanager
async def transaction(conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
    """
    Open a transaction.

    With a connection given, a nested transaction (savepoint) is opened on it.
    Otherwise a connection is acquired from the pool for the duration of the block.

    Example:
        async with database.transaction() as conn:
            await database.insert_processed_event("prodamus", "p-1", conn=conn)
            await database.upsert_subscription(42, expires_at, now, conn=conn)
    """
    async with acquire(conn) as connection:
        async with connection.transaction():
            yield connection


# ====================================================================================
# ORDERS: payment links created by the bot
# ====================================================================================

async def create_order(
    order_id: str,
    telegram_id: int,
    plan: str,
    days: int,
    price: int,
    created_at: Optional[datetime] = None,
    conn: Optional[asyncpg.Connection] = None,
) -> Dict[str, Any]:
    """Insert a new order and return it."""
    created_at = created_at or datetime.now(timezone.utc)
    async with acquire(conn) as c:
        row = await c.fetchrow(
            """INSERT INTO orders (order_id, telegram_id, plan, days, price, created_at)
               VALUES ($1, $2, $3, $4, $5, $6)
               RETURNING order_id, telegram_id, plan, days, price, created_at, paid_at""",
            order_id, telegram_id, plan, days, price, _to_db_utc(created_at)
        )
    return _normalize_row(row, "created_at", "paid_at")


async def get_order(order_id: str, conn: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    """Получить заказ по order_id"""
    async with acquire(conn) as c:
        row = await c.fetchrow(
            """SELECT order_id, telegram_id, plan, days, price, created_at, paid_at
               FROM orders WHERE order_id = $1""",
            order_id
        )
    return _normalize_row(row, "created_at", "paid_at")


async def mark_order_paid(order_id: str, paid_at: datetime, conn: Optional[asyncpg.Connection] = None) -> bool:
    """
    Set paid_at once.

    Returns:
        True if this call set it, False if already paid or unknown
    """
    async with acquire(conn) as c:
        result = await c.execute(
            "UPDATE orders SET paid_at = $2 WHERE order_id = $1 AND paid_at IS NULL",
            order_id, _to_db_utc(paid_at)
        )
    return result == "UPDATE 1"


# ====================================================================================
# PROCESSED WEBHOOK EVENTS: idempotency registry
# ====================================================================================

async def insert_processed_event(
    provider: str,
    event_id: str,
    processed_at: Optional[datetime] = None,
    conn: Optional[asyncpg.Connection] = None,
) -> bool:
    """
    Insert (provider, event_id).

    Returns:
        True if inserted, False if the pair already existed
    """
    processed_at = processed_at or datetime.now(timezone.utc)
    async with acquire(conn) as c:
        inserted = await c.fetchval(
            """INSERT INTO processed_webhook_events (provider, event_id, processed_at)
               VALUES ($1, $2, $3)
               ON CONFLICT (provider, event_id) DO NOTHING
               RETURNING 1""",
            provider, event_id, _to_db_utc(processed_at)
        )
    return inserted is not None


# ====================================================================================
# SUBSCRIPTIONS: one row per user, expires_at drives eviction
# ====================================================================================

async def lock_user(telegram_id: int, conn: asyncpg.Connection) -> None:
    """
    Take the per-user advisory lock for the current transaction.

    Concurrent grants for the same user serialize here; the lock is released
    on commit or rollback.
    """
    await conn.execute("SELECT pg_advisory_xact_lock($1)", telegram_id)


async def get_subscription_expiry(telegram_id: int, conn: Optional[asyncpg.Connection] = None) -> Optional[datetime]:
    """Получить дату окончания подписки (aware UTC) или None"""
    async with acquire(conn) as c:
        expires_at = await c.fetchval(
            "SELECT expires_at FROM subscriptions WHERE telegram_id = $1",
            telegram_id
        )
    return _from_db_utc(expires_at)


async def upsert_subscription(
    telegram_id: int,
    expires_at: datetime,
    updated_at: datetime,
    conn: Optional[asyncpg.Connection] = None,
) -> None:
    async with acquire(conn) as c:
        await c.execute(
            """INSERT INTO subscriptions (telegram_id, expires_at, updated_at)
               VALUES ($1, $2, $3)
               ON CONFLICT (telegram_id)
               DO UPDATE SET expires_at = EXCLUDED.expires_at, updated_at = EXCLUDED.updated_at""",
            telegram_id, _to_db_utc(expires_at), _to_db_utc(updated_at)
        )


async def delete_subscription(telegram_id: int, conn: Optional[asyncpg.Connection] = None) -> bool:
    """Удалить подписку. True если строка была удалена"""
    async with acquire(conn) as c:
        result = await c.execute("DELETE FROM subscriptions WHERE telegram_id = $1", telegram_id)
    return result == "DELETE 1"


async def list_expired_since(now: datetime, conn: Optional[asyncpg.Connection] = None) -> List[int]:
    """Telegram ids of all subscriptions with expires_at < now."""
    async with acquire(conn) as c:
        rows = await c.fetch(
            "SELECT telegram_id FROM subscriptions WHERE expires_at < $1 ORDER BY expires_at",
            _to_db_utc(now)
        )
    return [row["telegram_id"] for row in rows]
