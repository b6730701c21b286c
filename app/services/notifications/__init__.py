"""
Group access notifications: invite link, eviction ban, post-payment message.
"""

from app.services.notifications.service import (
    GRANT_MESSAGE_WITH_INVITE,
    GRANT_MESSAGE_WITHOUT_INVITE,
    GroupGateway,
    parse_chat_id,
)

__all__ = [
    "GRANT_MESSAGE_WITH_INVITE",
    "GRANT_MESSAGE_WITHOUT_INVITE",
    "GroupGateway",
    "parse_chat_id",
]
