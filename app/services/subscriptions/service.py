"""
Subscription Ledger

Durable record of paid access: one row per user with an expiry date. Grants
extend the expiry additively, the membership enforcer reads expired rows.

All functions are pure business logic - no aiogram imports or Telegram-specific types.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import database
from app.services.subscriptions.exceptions import GrantRefusedError
from app.utils.security import log_audit_event, validate_telegram_id

logger = logging.getLogger(__name__)

# Upper bound for one grant; larger values come from malformed payloads
MAX_GRANT_DAYS = 3660


# ====================================================================================
# Expiry Calculation
# ====================================================================================

def compute_new_expiry(current: Optional[datetime], now: datetime, days: int) -> datetime:
    """
    Calculate expiry after a grant.

    An active subscription is extended from its current expiry, an expired or
    missing one starts from now. The result is never earlier than current.

    Args:
        current: Current expiry (aware UTC) or None
        now: Grant time (aware UTC)
        days: Granted days (positive)

    Returns:
        New expiry (aware UTC)
    """
    if current is not None and current > now:
        return current + timedelta(days=days)
    return now + timedelta(days=days)


@dataclass(frozen=True)
class GrantResult:
    """Outcome of a successful grant"""
    telegram_id: int
    days: int
    previous_expiry: Optional[datetime]
    expires_at: datetime

    @property
    def extended(self) -> bool:
        """True when an active subscription was extended rather than (re)started."""
        if self.previous_expiry is None:
            return False
        return self.expires_at == self.previous_expiry + timedelta(days=self.days)


def _check_grant(telegram_id, days, correlation_id: Optional[str]) -> None:
    is_valid, error = validate_telegram_id(telegram_id)
    days_valid = isinstance(days, int) and not isinstance(days, bool) and 0 < days <= MAX_GRANT_DAYS
    if is_valid and days_valid:
        return
    log_audit_event(
        "GRANT_REFUSED",
        telegram_id=telegram_id if isinstance(telegram_id, int) else None,
        correlation_id=correlation_id,
        details={"days": days, "reason": error or "invalid days"},
    )
    raise GrantRefusedError(telegram_id, days)


class SubscriptionLedger:
    """
    Postgres-backed subscription ledger.

    Example:
        ledger = SubscriptionLedger()
        result = await ledger.grant(123456789, 30)
        result.expires_at  # now + 30 days (or current expiry + 30 days)
    """

    async def grant(
        self,
        telegram_id: int,
        days: int,
        now: Optional[datetime] = None,
        conn=None,
        correlation_id: Optional[str] = None,
    ) -> GrantResult:
        """
        Extend a user's subscription by days.

        Concurrent grants for one user serialize on a per-user advisory lock,
        so two grants of 30 days always add up to 60.

        Args:
            telegram_id: Telegram user ID (positive)
            days: Days to add (1..MAX_GRANT_DAYS)
            now: Grant time (defaults to current UTC time)
            conn: Connection of an open transaction (grant joins it)
            correlation_id: Delivery correlation ID for the audit log

        Returns:
            GrantResult with previous and new expiry

        Raises:
            GrantRefusedError: non-positive or out-of-range telegram_id/days (audited, never retried)
        """
        _check_grant(telegram_id, days, correlation_id)
        now = now or datetime.now(timezone.utc)

        async with database.transaction(conn) as tx:
            await database.lock_user(telegram_id, conn=tx)
            current = await database.get_subscription_expiry(telegram_id, conn=tx)
            expires_at = compute_new_expiry(current, now, days)
            await database.upsert_subscription(telegram_id, expires_at, now, conn=tx)

        result = GrantResult(
            telegram_id=telegram_id,
            days=days,
            previous_expiry=current,
            expires_at=expires_at,
        )
        log_audit_event(
            "GRANT_APPLIED",
            telegram_id=telegram_id,
            correlation_id=correlation_id,
            details={
                "days": days,
                "previous_expiry": current.isoformat() if current else None,
                "expires_at": expires_at.isoformat(),
            },
        )
        return result

    async def get_expiry(self, telegram_id: int) -> Optional[datetime]:
        return await database.get_subscription_expiry(telegram_id)

    async def revoke(self, telegram_id: int) -> bool:
        """Delete the user's subscription. Returns True if a row was removed."""
        removed = await database.delete_subscription(telegram_id)
        if removed:
            log_audit_event("SUBSCRIPTION_REVOKED", telegram_id=telegram_id)
        return removed

    async def list_expired_since(self, now: Optional[datetime] = None) -> List[int]:
        """Users whose expires_at < now."""
        return await database.list_expired_since(now or datetime.now(timezone.utc))
