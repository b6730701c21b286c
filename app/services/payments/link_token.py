"""
Order token codec.

An order token binds a Telegram user to a subscription period and travels
through the payment provider as the order number:

    swb:<telegram_id>:<days>:<hex hmac-sha256("<telegram_id>:<days>", link_secret)>

Building is deterministic. Parsing is pure and fails closed: any defect yields
None so the caller can fall back to the next reconciliation strategy.
"""

import hashlib
import hmac
import logging
from typing import Optional, Tuple
from urllib.parse import unquote

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "swb"
TOKEN_SEPARATOR = ":"


def _sign(telegram_id: int, days: int, secret: str) -> str:
    message = f"{telegram_id}{TOKEN_SEPARATOR}{days}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_order_token(telegram_id: int, days: int, secret: str) -> str:
    """
    Build signed order token.

    Args:
        telegram_id: Telegram user ID (positive)
        days: Subscription period in days (positive)
        secret: Link secret

    Returns:
        Token string "swb:<uid>:<days>:<hex mac>"

    Raises:
        ValueError: non-positive id/days or empty secret
    """
    if telegram_id <= 0 or days <= 0:
        raise ValueError(f"telegram_id and days must be positive, got {telegram_id}, {days}")
    if not secret:
        raise ValueError("link secret is empty")
    mac = _sign(telegram_id, days, secret)
    return TOKEN_SEPARATOR.join((TOKEN_PREFIX, str(telegram_id), str(days), mac))


def looks_like_order_token(value: Optional[str]) -> bool:
    """True when value has the token prefix (signature not checked)."""
    if not value:
        return False
    return unquote(value.strip()).startswith(TOKEN_PREFIX + TOKEN_SEPARATOR)


def _parse_positive_int(value: str) -> Optional[int]:
    # isdigit() alone accepts non-ASCII digits and int() accepts "+5" and " 5"
    if not value.isascii() or not value.isdigit():
        return None
    number = int(value)
    return number if number > 0 else None


def parse_order_token(token: Optional[str], secret: str) -> Optional[Tuple[int, int]]:
    """
    Parse and verify order token.

    The token is URL-decoded once (tolerates one level of percent-encoding).

    Args:
        token: Token string (possibly percent-encoded)
        secret: Link secret

    Returns:
        (telegram_id, days) when the signature matches, None otherwise
    """
    if not token or not secret:
        return None

    value = unquote(token.strip())
    parts = value.split(TOKEN_SEPARATOR)
    if len(parts) != 4 or parts[0] != TOKEN_PREFIX:
        return None

    telegram_id = _parse_positive_int(parts[1])
    days = _parse_positive_int(parts[2])
    if telegram_id is None or days is None:
        return None

    expected = _sign(telegram_id, days, secret)
    presented = parts[3]
    if not hmac.compare_digest(expected.encode("ascii"), presented.encode("utf-8")):
        logger.debug("ORDER_TOKEN_MAC_MISMATCH uid=%s days=%s", telegram_id, days)
        return None

    return telegram_id, days
