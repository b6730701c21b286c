"""
Membership Enforcer - removal of expired subscribers from the paid group

Background task, independent of webhook handling:
- Every CLEANUP_INTERVAL_SECONDS reads users with expires_at < now
- Bans each one until now + ban_seconds (Telegram lifts the ban automatically,
  so the user can rejoin after paying again)
- A failure on one user is logged and the batch continues
- Subscriptions are never modified here; an expired user is re-banned every
  run until they renew

Single-flight: in-process asyncio.Lock, plus a Redis lock across instances
when Redis is configured.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import database
import redis_client
from app.core.redis_lock import RedisDistributedLock
from app.utils.logging_helpers import (
    classify_error,
    log_worker_iteration_end,
    log_worker_iteration_start,
)
from app.utils.retry import TRANSIENT_EXCEPTIONS

logger = logging.getLogger(__name__)

WORKER_NAME = "membership_enforcer"

# Minimum safe sleep on failure to prevent tight retry storms
MINIMUM_SAFE_SLEEP_ON_FAILURE = 10


@dataclass
class EnforcementReport:
    """Outcome of one enforcement run"""
    expired: int = 0
    removed: int = 0
    failed: int = 0
    skipped: bool = False


class MembershipEnforcer:
    """
    Periodic eviction of expired subscribers.

    Example:
        enforcer = MembershipEnforcer(ledger, gateway, interval_seconds=1800)
        enforcer.start()
        ...
        await enforcer.stop()
    """

    def __init__(
        self,
        ledger,
        gateway,
        interval_seconds: int = 1800,
        ban_seconds: int = 60,
        delay_seconds: float = 0.08,
        lock_key: str = "lock:membership_enforcer",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.interval_seconds = interval_seconds
        self.ban_seconds = ban_seconds
        self.delay_seconds = delay_seconds
        self.lock_key = lock_key
        self.clock = clock
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    async def _acquire_distributed_lock(self) -> Optional[RedisDistributedLock]:
        """
        Take the cross-instance lock.

        Returns:
            Held lock, None when Redis is not configured or unavailable

        Raises:
            LookupError: another instance holds the lock
        """
        try:
            client = await redis_client.get_redis_client()
        except RuntimeError as e:
            logger.warning(f"{WORKER_NAME}: Redis unavailable, running without cross-instance lock: {e}")
            return None
        if client is None:
            return None

        lock = RedisDistributedLock(client, key=self.lock_key, ttl_seconds=max(60, self.interval_seconds))
        try:
            acquired = await lock.try_acquire()
        except Exception as e:
            # Bans are idempotent; a double run only repeats them
            logger.warning(f"{WORKER_NAME}: Redis lock error, running without it: {type(e).__name__}: {e}")
            return None
        if not acquired:
            raise LookupError(self.lock_key)
        return lock

    async def run_once(self, now: Optional[datetime] = None) -> EnforcementReport:
        """
        Evict every user whose subscription expired before now.

        Returns:
            EnforcementReport (skipped=True if another run is in progress or the database is not ready)
        """
        if self._lock.locked():
            logger.info(f"{WORKER_NAME}: previous run still in progress, skipping")
            return EnforcementReport(skipped=True)

        if not database.DB_READY:
            logger.warning(f"{WORKER_NAME}: skipping run, database not ready")
            return EnforcementReport(skipped=True)

        async with self._lock:
            try:
                distributed_lock = await self._acquire_distributed_lock()
            except LookupError:
                logger.info(f"{WORKER_NAME}: another instance is running enforcement, skipping")
                return EnforcementReport(skipped=True)
            try:
                return await self._evict(now or self.clock())
            finally:
                if distributed_lock is not None:
                    await distributed_lock.release()

    async def _evict(self, now: datetime) -> EnforcementReport:
        expired_users = await self.ledger.list_expired_since(now)
        report = EnforcementReport(expired=len(expired_users))
        until = now + timedelta(seconds=self.ban_seconds)

        for index, telegram_id in enumerate(expired_users):
            try:
                await self.gateway.ban_temporarily(telegram_id, until)
                report.removed += 1
                logger.info(f"EVICTED user={telegram_id} until={until.isoformat()}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                report.failed += 1
                logger.warning(f"EVICTION_FAILED user={telegram_id} error={type(e).__name__}: {str(e)[:200]}")

            if self.delay_seconds > 0 and index < len(expired_users) - 1:
                await asyncio.sleep(self.delay_seconds)

        if report.expired:
            logger.info(
                f"{WORKER_NAME}: expired={report.expired} removed={report.removed} failed={report.failed}"
            )
        return report

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _wait(self, seconds: float) -> bool:
        """Sleep until timeout or stop. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> None:
        """Run until stop() is called or the task is cancelled."""
        logger.info(
            f"{WORKER_NAME} started (interval: {self.interval_seconds}s, ban: {self.ban_seconds}s, "
            f"delay: {self.delay_seconds}s)"
        )
        iteration_number = 0
        try:
            while not await self._wait(self.interval_seconds):
                iteration_number += 1
                log_worker_iteration_start(worker_name=WORKER_NAME, iteration_number=iteration_number)
                iteration_start_time = time.monotonic()
                outcome = "success"
                error_type = None
                report = EnforcementReport()
                try:
                    report = await self.run_once()
                    if report.skipped:
                        outcome = "skipped"
                    elif report.failed:
                        outcome = "degraded"
                except TRANSIENT_EXCEPTIONS as e:
                    logger.warning(
                        f"{WORKER_NAME}: database temporarily unavailable: {type(e).__name__}: {str(e)[:100]}"
                    )
                    outcome = "degraded"
                    error_type = "infra_error"
                except Exception as e:
                    logger.error(f"{WORKER_NAME}: unexpected error: {type(e).__name__}: {str(e)[:100]}")
                    logger.debug(f"{WORKER_NAME}: full traceback", exc_info=True)
                    outcome = "failed"
                    error_type = classify_error(e)
                finally:
                    log_worker_iteration_end(
                        worker_name=WORKER_NAME,
                        outcome=outcome,
                        items_processed=report.removed,
                        error_type=error_type,
                        duration_ms=(time.monotonic() - iteration_start_time) * 1000,
                    )
                if outcome == "failed" and await self._wait(MINIMUM_SAFE_SLEEP_ON_FAILURE):
                    break
        except asyncio.CancelledError:
            logger.info(f"{WORKER_NAME} task cancelled")
            raise
        logger.info(f"{WORKER_NAME} stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run(), name=WORKER_NAME)
        return self._task

    async def stop(self, timeout: float = 30.0) -> None:
        """Ask the loop to stop between runs; cancel if it does not finish in time."""
        if self._task is None:
            return
        if self._task.done():
            self._task = None
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
