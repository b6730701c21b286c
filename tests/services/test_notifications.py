"""
Unit tests for the group access gateway.

The aiogram Bot is replaced with AsyncMock; no Telegram calls are made.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram.exceptions import TelegramForbiddenError

from app.services.notifications import GroupGateway
from app.services.notifications.service import (
    GRANT_MESSAGE_WITHOUT_INVITE,
    parse_chat_id,
)

GROUP_ID = "-1001234567890"


@pytest.fixture
def bot():
    bot = MagicMock()
    bot.send_message = AsyncMock(return_value=MagicMock())
    bot.create_chat_invite_link = AsyncMock(return_value=MagicMock(invite_link="https://t.me/+created"))
    bot.ban_chat_member = AsyncMock(return_value=True)
    return bot


class TestParseChatId:
    @pytest.mark.parametrize("value,expected", [
        ("-1001234567890", -1001234567890),
        ("12345", 12345),
        ("@soulway_club", "@soulway_club"),
        ("", ""),
    ])
    def test_parse(self, value, expected):
        assert parse_chat_id(value) == expected


@pytest.mark.asyncio
class TestEnsureInviteLink:
    """Tests for invite link creation and caching"""

    async def test_configured_link_used(self, bot):
        gateway = GroupGateway(bot, group_id=GROUP_ID, invite_url="https://t.me/+static")
        assert await gateway.ensure_invite_link() == "https://t.me/+static"
        bot.create_chat_invite_link.assert_not_called()

    async def test_created_once(self, bot):
        gateway = GroupGateway(bot, group_id=GROUP_ID)
        links = await asyncio.gather(gateway.ensure_invite_link(), gateway.ensure_invite_link())
        assert links == ["https://t.me/+created", "https://t.me/+created"]
        bot.create_chat_invite_link.assert_awaited_once_with(chat_id=-1001234567890)

    async def test_no_group(self, bot):
        assert await GroupGateway(bot).ensure_invite_link() is None

    async def test_creation_timeout(self, bot):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        bot.create_chat_invite_link = slow
        gateway = GroupGateway(bot, group_id=GROUP_ID, timeout=0.01)
        assert await gateway.ensure_invite_link() is None


@pytest.mark.asyncio
class TestNotifyGranted:
    """Tests for the post-payment message"""

    async def test_message_with_invite(self, bot):
        gateway = GroupGateway(bot, group_id=GROUP_ID)
        assert await gateway.notify_granted(42) is True
        user_id, text = bot.send_message.await_args.args
        assert user_id == 42
        assert text.startswith("Благодарю за оплату!")
        assert "https://t.me/+created" in text

    async def test_message_without_invite(self, bot):
        gateway = GroupGateway(bot)
        assert await gateway.notify_granted(42) is True
        assert bot.send_message.await_args.args == (42, GRANT_MESSAGE_WITHOUT_INVITE)

    async def test_user_blocked_bot(self, bot):
        bot.send_message = AsyncMock(side_effect=TelegramForbiddenError(method=MagicMock(), message="blocked"))
        gateway = GroupGateway(bot, group_id=GROUP_ID)
        assert await gateway.notify_granted(42) is False


@pytest.mark.asyncio
class TestBanTemporarily:
    async def test_ban_until(self, bot):
        until = datetime(2024, 1, 15, 12, 1, tzinfo=timezone.utc)
        await GroupGateway(bot, group_id=GROUP_ID).ban_temporarily(42, until)
        bot.ban_chat_member.assert_awaited_once_with(chat_id=-1001234567890, user_id=42, until_date=until)

    async def test_failure_propagates(self, bot):
        bot.ban_chat_member = AsyncMock(side_effect=RuntimeError("telegram down"))
        with pytest.raises(RuntimeError):
            await GroupGateway(bot, group_id=GROUP_ID).ban_temporarily(42, datetime.now(timezone.utc))
