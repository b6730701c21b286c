import asyncio
import hashlib
import logging
import os
import signal
import sys

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from app.core.logging_config import setup_logging
setup_logging()

from aiogram import Bot

import config
import database
import redis_client
import webhook_server
from app.core.exceptions import ConfigurationError
from app.core.structured_logger import log_event
from app.services.notifications import GroupGateway
from app.services.payments import WebhookProcessor
from app.services.subscriptions import SubscriptionLedger
from membership_enforcer import MembershipEnforcer

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
# Standard log fields (logical, not enforced by library):
# - component        (webhook / worker / infra / shutdown)
# - operation        (what is happening)
# - correlation_id   (webhook delivery / worker iteration id)
# - outcome          (success | degraded | failed | ignored ...)
# - duration_ms      (when applicable)
# - reason           (short, non-PII explanation)
#
# SECURITY:
# - DO NOT log secrets, PII, or full payloads (sanitize_for_logging)
# ====================================================================================

logger = logging.getLogger(__name__)

DB_RETRY_INTERVAL_SECONDS = 30


async def retry_db_init(database_url: str, stop_event: asyncio.Event) -> None:
    """
    Повторная инициализация БД каждые 30 секунд, пока DB_READY == False.

    Webhooks answer 500 meanwhile, so the provider keeps redelivering.
    """
    logger.info(f"Starting DB initialization retry task (every {DB_RETRY_INTERVAL_SECONDS} seconds)")
    while not database.DB_READY:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=DB_RETRY_INTERVAL_SECONDS)
            return
        except asyncio.TimeoutError:
            pass
        try:
            if await database.init_db(database_url):
                log_event(logger, component="infra", operation="db_recovered", outcome="success")
                return
        except Exception as e:
            logger.warning(f"DB init retry failed: {type(e).__name__}: {e}")


async def main() -> int:
    try:
        settings = config.load_settings()
    except ConfigurationError as e:
        logger.critical(f"CONFIGURATION_ERROR {e}")
        return 1

    logger.info(
        "SERVICE_STARTED pid=%s env=%s signature_mode=%s signature_check=%s eviction=%s",
        os.getpid(), settings.app_env.upper(), settings.signature_mode,
        settings.signature_check_enabled, settings.eviction_enabled,
    )
    logger.info("BOT_TOKEN_HASH=%s (first 8 chars of sha256)", hashlib.sha256(settings.bot_token.encode()).hexdigest()[:8])
    if not settings.signature_check_enabled:
        logger.warning("WEBHOOK_SIGNATURE_CHECK_DISABLED provider secret is empty (insecure mode)")

    redis_client.configure(settings.redis_url)
    if redis_client.is_configured():
        await redis_client.check_redis_connection()

    # ====================================================================================
    # SAFE STARTUP GUARD: the HTTP server starts even if the database is unavailable
    # ====================================================================================
    try:
        if not await database.init_db(settings.database_url):
            logger.error("DB INIT FAILED - RUNNING IN DEGRADED MODE")
    except Exception as e:
        logger.exception(f"DB INIT FAILED - RUNNING IN DEGRADED MODE: {type(e).__name__}: {e}")
        database.DB_READY = False

    bot = Bot(token=settings.bot_token)
    gateway = GroupGateway(
        bot,
        group_id=settings.group_id,
        invite_url=settings.group_invite_url,
        timeout=settings.telegram_timeout_seconds,
    )
    ledger = SubscriptionLedger()
    processor = WebhookProcessor(settings, ledger=ledger, gateway=gateway)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still stops asyncio.run
            pass

    background_tasks = []
    if not database.DB_READY:
        background_tasks.append(asyncio.create_task(
            retry_db_init(settings.database_url, stop_event), name="retry_db_init"
        ))

    enforcer = None
    if settings.eviction_enabled:
        enforcer = MembershipEnforcer(
            ledger,
            gateway,
            interval_seconds=settings.cleanup_interval_seconds,
            ban_seconds=settings.eviction_ban_seconds,
            delay_seconds=settings.eviction_delay_seconds,
            lock_key=f"lock:{settings.app_env}:membership_enforcer",
        )
        enforcer.start()
    else:
        logger.warning("GROUP_ID is not set - membership enforcer disabled")

    runner = None
    try:
        runner = await webhook_server.start_server(
            processor,
            host=settings.webhook_host,
            port=settings.webhook_port,
            shutdown_timeout=settings.shutdown_timeout_seconds,
        )
        await stop_event.wait()
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        # Stop accepting requests first; in-flight ones get shutdown_timeout to finish
        if runner is not None:
            try:
                await runner.cleanup()
                logger.info("HTTP server stopped")
            except Exception as e:
                logger.error(f"Error stopping HTTP server: {e}")

        if enforcer is not None:
            await enforcer.stop(timeout=settings.shutdown_timeout_seconds)

        stop_event.set()
        for task in background_tasks:
            if not task.done():
                task.cancel()
        for task in background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Error during shutdown of task {task.get_name()}: {e}")

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        await redis_client.close_redis_client()

        try:
            await bot.session.close()
            logger.info("Bot session closed")
        except Exception as e:
            logger.debug(f"Error closing bot session: {e}")

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")

    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Сервис остановлен")
