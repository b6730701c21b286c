"""
Redis Distributed Lock Module

Cross-instance single-flight guard using the Redis SET NX PX pattern.
The lock is released by a token-checked Lua script and expires on its own
if the holder crashes.
"""
import logging
import os
import uuid
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete (safe lock release)
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisDistributedLock:
    """
    Non-blocking Redis lock: one attempt, no waiting.

    Example:
        lock = RedisDistributedLock(redis_client, key="lock:prod:membership_enforcer", ttl_seconds=900)
        if await lock.try_acquire():
            try:
                ...  # critical section
            finally:
                await lock.release()
    """

    def __init__(self, redis_client: redis.Redis, key: str, ttl_seconds: int = 60):
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.token: Optional[str] = None
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")

    @property
    def acquired(self) -> bool:
        return self.token is not None

    async def try_acquire(self) -> bool:
        """
        Try to take the lock once.

        Returns:
            True if acquired, False if another holder has it

        Raises:
            redis.RedisError: Redis unavailable (caller decides how to degrade)
        """
        if self.acquired:
            return True
        token = str(uuid.uuid4())
        result = await self.redis_client.set(self.key, token, nx=True, px=self.ttl_seconds * 1000)
        if not result:
            logger.info(f"REDIS_LOCK_BUSY key={self.key} instance={self.instance_id}")
            return False
        self.token = token
        logger.info(f"REDIS_LOCK_ACQUIRED key={self.key} ttl={self.ttl_seconds}s instance={self.instance_id}")
        return True

    async def release(self) -> None:
        """
        Release the lock if this instance holds it.

        Safe to call multiple times. Errors are logged; the TTL frees the key anyway.
        """
        if not self.acquired:
            return
        try:
            release_script = self.redis_client.register_script(RELEASE_SCRIPT)
            released = await release_script(keys=[self.key], args=[self.token])
            if released:
                logger.info(f"REDIS_LOCK_RELEASED key={self.key}")
            else:
                logger.warning(f"REDIS_LOCK_EXPIRED_BEFORE_RELEASE key={self.key}")
        except Exception as e:
            logger.error(f"REDIS_LOCK_RELEASE_ERROR key={self.key} reason={str(e)[:100]}")
        finally:
            self.token = None
