"""
Webhook Idempotency Module

Guarantees at-most-once handling of a provider event across restarts and
multiple instances. The unique key (provider, event_id) lives in Postgres, so
the mark can share a transaction with the subscription grant: if the grant
fails, the mark is rolled back and the provider's redelivery succeeds.
"""
import hashlib
import logging
from typing import Mapping, Optional, Sequence

import database

logger = logging.getLogger(__name__)

# Field priority for the provider's event identifier
EVENT_ID_FIELDS: Sequence[str] = (
    "payment_id",
    "transaction_id",
    "invoice_id",
    "order_id",
    "order_num",
)

BODY_DIGEST_PREFIX = "sha256:"


def resolve_event_id(fields: Mapping[str, str], raw_body: bytes) -> str:
    """
    Pick the event identifier of a delivery.

    Args:
        fields: Flat payload fields
        raw_body: Raw request body (digest fallback when no id field is present)

    Returns:
        First non-empty id field, or "sha256:<hex digest of raw body>"
    """
    for name in EVENT_ID_FIELDS:
        value = fields.get(name)
        if value and value.strip():
            return value.strip()
    return BODY_DIGEST_PREFIX + hashlib.sha256(raw_body or b"").hexdigest()


class IdempotencyGuard:
    """
    Postgres-backed processed-event registry.

    Example:
        guard = IdempotencyGuard()
        async with database.transaction() as conn:
            if not await guard.mark_processed("prodamus", event_id, conn=conn):
                return  # duplicate delivery
            await ledger.grant(user_id, days, conn=conn)
    """

    async def mark_processed(self, provider: str, event_id: str, conn=None) -> bool:
        """
        Record (provider, event_id) as processed.

        Args:
            provider: Provider name from the webhook path
            event_id: Event identifier (see resolve_event_id)
            conn: Optional connection of an open transaction

        Returns:
            True if this call inserted the record (first delivery)
            False if it already existed (duplicate)
        """
        inserted = await database.insert_processed_event(provider, event_id, conn=conn)
        if inserted:
            logger.info("IDEMPOTENCY_GRANTED provider=%s event_id=%s", provider, event_id)
        else:
            logger.warning("IDEMPOTENCY_DUPLICATE provider=%s event_id=%s", provider, event_id)
        return inserted

