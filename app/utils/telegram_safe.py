"""
Centralized safe wrapper for bot.send_message.

Handles TelegramBadRequest (chat not found), TelegramForbiddenError (blocked)
and timeouts. A failed notification never fails the caller.
"""
import asyncio
import logging

from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


async def safe_send_message(bot, telegram_id: int, text: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, **kwargs):
    """
    Send Telegram message with graceful error handling.
    On chat_not_found / blocked / timeout: logs, returns None.
    On success: returns Message.

    Returns:
        Message on success, None on any handled failure.
    """
    try:
        return await asyncio.wait_for(bot.send_message(telegram_id, text, **kwargs), timeout=timeout)

    except TelegramBadRequest as e:
        if "chat not found" in str(e).lower():
            logger.warning(f"SAFE_SEND_SKIP_CHAT_NOT_FOUND user={telegram_id}")
            return None
        logger.exception(f"SAFE_SEND_BAD_REQUEST user={telegram_id}")
        return None

    except TelegramForbiddenError:
        logger.warning(f"SAFE_SEND_FORBIDDEN user={telegram_id}")
        return None

    except asyncio.TimeoutError:
        logger.warning(f"SAFE_SEND_TIMEOUT user={telegram_id} timeout={timeout}s")
        return None

    except Exception:
        logger.exception(f"SAFE_SEND_UNKNOWN_ERROR user={telegram_id}")
        return None
