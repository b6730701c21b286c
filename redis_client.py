"""
Redis Client Module

Async Redis client using redis.asyncio with singleton pattern.
Optional: when no Redis URL is configured every caller gets None and runs
single-instance.
"""
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
_redis_url: str = ""
REDIS_READY: bool = False


def configure(redis_url: str) -> None:
    """Set the Redis URL (called once at startup from Settings)."""
    global _redis_url
    _redis_url = (redis_url or "").strip()


def is_configured() -> bool:
    return bool(_redis_url)


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create Redis client instance (singleton pattern).

    Returns:
        Redis client instance if configured, None if Redis URL not set

    Raises:
        RuntimeError: If Redis URL is invalid
    """
    global _redis_client, REDIS_READY

    if not _redis_url:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                _redis_url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=10
            )
            logger.info("Redis client created")
        except Exception as e:
            logger.error(f"Failed to create Redis client: {e}")
            _redis_client = None
            REDIS_READY = False
            raise RuntimeError(f"Redis client creation failed: {e}") from e

    return _redis_client


async def check_redis_connection() -> bool:
    """
    Check Redis connection health with PING.

    Does NOT raise - returns False on any error.
    """
    global REDIS_READY

    if not _redis_url:
        REDIS_READY = False
        return False

    try:
        client = await get_redis_client()
        REDIS_READY = bool(client is not None and await client.ping())
    except Exception as e:
        REDIS_READY = False
        logger.warning(f"REDIS_CONNECTION_FAILED reason={str(e)[:100]}")
        return False

    if REDIS_READY:
        logger.info("REDIS_CONNECTED")
    else:
        logger.warning("REDIS_CONNECTION_FAILED reason=ping_returned_false")
    return REDIS_READY


async def close_redis_client():
    """
    Close Redis client connection pool.

    Safe to call multiple times - idempotent.
    """
    global _redis_client, REDIS_READY

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")
        finally:
            _redis_client = None
            REDIS_READY = False
