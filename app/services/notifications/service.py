"""
Group Access Gateway

Outbound Telegram calls for the paid group: invite link, temporary ban
(eviction) and the post-payment message. Every call is bounded by a timeout
and none is retried here.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Union

from aiogram.exceptions import TelegramAPIError

from app.utils.telegram_safe import safe_send_message

logger = logging.getLogger(__name__)

GRANT_MESSAGE_WITH_INVITE = "Благодарю за оплату! ✨\nВот ссылка для входа в закрытый чат:\n{invite}"
GRANT_MESSAGE_WITHOUT_INVITE = "Благодарю за оплату! ✨ Мы скоро пришлём ссылку для входа в чат."


def parse_chat_id(group_id: str) -> Union[int, str]:
    """"-1001234567890" -> -1001234567890; "@club" stays a string."""
    value = (group_id or "").strip()
    digits = value[1:] if value.startswith("-") else value
    if digits.isascii() and digits.isdigit():
        return int(value)
    return value


class GroupGateway:
    """
    Telegram collaborator for one paid group.

    Example:
        gateway = GroupGateway(bot, group_id="-1001234567890", timeout=10.0)
        await gateway.notify_granted(123456789)
    """

    def __init__(self, bot, group_id: str = "", invite_url: str = "", timeout: float = 10.0):
        self.bot = bot
        self.group_id = group_id
        self.timeout = timeout
        self._invite_link: Optional[str] = invite_url or None
        self._invite_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.group_id)

    async def ensure_invite_link(self) -> Optional[str]:
        """
        Return the group invite link, creating and caching one if needed.

        Returns:
            Invite link, or None when no group is configured or creation failed
        """
        async with self._invite_lock:
            if self._invite_link:
                return self._invite_link
            if not self.enabled:
                return None
            try:
                link = await asyncio.wait_for(
                    self.bot.create_chat_invite_link(chat_id=parse_chat_id(self.group_id)),
                    timeout=self.timeout,
                )
            except (TelegramAPIError, asyncio.TimeoutError) as e:
                logger.warning(f"INVITE_LINK_CREATE_FAILED group={self.group_id} error={type(e).__name__}: {e}")
                return None
            if link is None or not getattr(link, "invite_link", None):
                logger.warning(f"INVITE_LINK_EMPTY group={self.group_id}")
                return None
            self._invite_link = link.invite_link
            logger.info(f"INVITE_LINK_CREATED group={self.group_id}")
            return self._invite_link

    async def ban_temporarily(self, telegram_id: int, until: datetime) -> None:
        """
        Remove a user from the group until the given time.

        Raises:
            TelegramAPIError: Telegram rejected the call
            asyncio.TimeoutError: call did not finish within the timeout
        """
        await asyncio.wait_for(
            self.bot.ban_chat_member(
                chat_id=parse_chat_id(self.group_id),
                user_id=telegram_id,
                until_date=until,
            ),
            timeout=self.timeout,
        )

    async def notify_granted(self, telegram_id: int) -> bool:
        """
        Thank the user and send the invite link.

        Returns:
            True if the message was delivered
        """
        invite = await self.ensure_invite_link()
        if invite:
            text = GRANT_MESSAGE_WITH_INVITE.format(invite=invite)
        else:
            text = GRANT_MESSAGE_WITHOUT_INVITE
        message = await safe_send_message(self.bot, telegram_id, text, timeout=self.timeout)
        return message is not None
