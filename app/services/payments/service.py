"""
Payment Webhook Processing

Turns one provider delivery into at most one subscription grant:

    signature check -> payload -> status filter -> reconcile -> idempotency mark -> grant -> ack

The idempotency mark and the grant share one database transaction: a failed
grant rolls the mark back, so the provider's redelivery can still succeed.

All functions are pure business logic - no aiohttp imports. Telegram is only
reached through the optional GroupGateway after the grant is committed.

External dependencies policy:
- Storage unavailable → TransientInfraError (HTTP 500, provider redelivers)
- Payload/reconciliation problems (including values Postgres refuses) → acknowledged, never retried
- Notification failures → logged, never fail the delivery
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Sequence

import asyncpg

import database
from app.core.exceptions import DuplicateEvent, SignatureError, TransientInfraError
from app.core.idempotency import IdempotencyGuard, resolve_event_id
from app.core.structured_logger import log_event
from app.services.payments.exceptions import InvalidPaymentPayloadError
from app.services.payments.payload import resolve_payload
from app.services.payments.reconciler import (
    DEFAULT_STRATEGIES,
    ReconcileContext,
    ReconcileStrategy,
    get_payment_status,
    is_success_status,
    reconcile,
)
from app.services.payments.signature import extract_signature, verify_webhook_signature
from app.services.subscriptions import GrantRefusedError, SubscriptionLedger
from app.utils.logging_helpers import generate_correlation_id, set_correlation_id
from app.utils.retry import TRANSIENT_EXCEPTIONS
from app.utils.security import log_audit_event, log_security_warning, sanitize_for_logging

logger = logging.getLogger(__name__)


# ====================================================================================
# Result Types
# ====================================================================================

STATUS_OK = "ok"
STATUS_IGNORED = "ignored"
STATUS_INVALID = "invalid"
STATUS_UNMATCHED = "unmatched"
STATUS_REFUSED = "refused"
STATUS_INVALID_SIGNATURE = "invalid_signature"


@dataclass(frozen=True)
class WebhookResult:
    """Acknowledgment of one delivery"""
    http_status: int
    status: str
    telegram_id: Optional[int] = None
    days: Optional[int] = None
    strategy: Optional[str] = None
    expires_at: Optional[datetime] = None
    duplicate: bool = False

    @property
    def body(self) -> dict:
        return {"status": self.status}

    @property
    def granted(self) -> bool:
        return self.expires_at is not None


def _ack(status: str, **kwargs) -> WebhookResult:
    return WebhookResult(http_status=200, status=status, **kwargs)


# ====================================================================================
# Processor
# ====================================================================================

class WebhookProcessor:
    """
    Provider webhook pipeline.

    Example:
        processor = WebhookProcessor(settings, gateway=gateway)
        result = await processor.process("prodamus", raw_body, request.headers, request.content_type)
        return web.json_response(result.body, status=result.http_status)
    """

    def __init__(
        self,
        settings,
        ledger: Optional[SubscriptionLedger] = None,
        guard: Optional[IdempotencyGuard] = None,
        gateway=None,
        strategies: Sequence[ReconcileStrategy] = DEFAULT_STRATEGIES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.ledger = ledger or SubscriptionLedger()
        self.guard = guard or IdempotencyGuard()
        self.gateway = gateway
        self.strategies = tuple(strategies)
        self.clock = clock

    def _has_header_signature(self, headers: Mapping[str, str]) -> bool:
        return extract_signature(headers, header_names=self.settings.signature_headers) is not None

    def _verify_signature(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        fields: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Check the presented signature against the raw body.

        Raises:
            SignatureError: signature missing or wrong while verification is enabled
        """
        if not self.settings.signature_check_enabled:
            return
        signature = extract_signature(headers, fields, header_names=self.settings.signature_headers)
        if signature is None:
            raise SignatureError("signature missing")
        if not verify_webhook_signature(raw_body, signature, self.settings.provider_secret):
            raise SignatureError("signature mismatch")

    def unreadable_body_result(self) -> WebhookResult:
        """Answer for a body too large to read: its signature cannot be checked."""
        if self.settings.signature_check_enabled and self.settings.strict_signatures:
            return WebhookResult(http_status=400, status=STATUS_INVALID_SIGNATURE)
        return _ack(STATUS_INVALID)

    def _resolve(self, provider: str, raw_body: bytes, content_type: Optional[str]) -> Optional[Dict[str, str]]:
        try:
            return resolve_payload(raw_body, content_type)
        except InvalidPaymentPayloadError as e:
            logger.warning(f"WEBHOOK_PAYLOAD_INVALID provider={provider} error={e}")
            return None

    async def process(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        content_type: Optional[str] = None,
    ) -> WebhookResult:
        """
        Process one delivery.

        Args:
            provider: Provider name from the URL path
            raw_body: Raw request body (signature is computed over it)
            headers: Request headers
            content_type: Content-Type header value

        Returns:
            WebhookResult (200 ack, or 400 for a rejected signature in strict mode)

        Raises:
            TransientInfraError: storage failure; the caller answers 500
        """
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
        start = time.monotonic()

        result = await self._process(provider, raw_body, headers, content_type, correlation_id)

        log_event(
            logger,
            component="webhook",
            operation="payment_webhook",
            correlation_id=correlation_id,
            outcome=result.status,
            duration_ms=int((time.monotonic() - start) * 1000),
            reason=result.strategy,
            provider=provider,
            http_status=result.http_status,
        )
        return result

    async def _process(self, provider, raw_body, headers, content_type, correlation_id) -> WebhookResult:
        fields = None
        parsed = False
        if not self._has_header_signature(headers):
            # Without a header the signature can only travel inside the body
            fields, parsed = self._resolve(provider, raw_body, content_type), True

        try:
            self._verify_signature(raw_body, headers, fields)
        except SignatureError as e:
            log_security_warning(
                "WEBHOOK_SIGNATURE_MISMATCH",
                correlation_id=correlation_id,
                details={"provider": provider, "mode": self.settings.signature_mode, "reason": str(e), "fields": fields},
            )
            if self.settings.strict_signatures:
                return WebhookResult(http_status=400, status=STATUS_INVALID_SIGNATURE)
            return _ack(STATUS_IGNORED)

        if not parsed:
            fields = self._resolve(provider, raw_body, content_type)
        if fields is None:
            return _ack(STATUS_INVALID)

        if not is_success_status(fields, self.settings.success_status):
            log_audit_event(
                "WEBHOOK_STATUS_IGNORED",
                correlation_id=correlation_id,
                details={"provider": provider, "status": get_payment_status(fields)},
            )
            return _ack(STATUS_IGNORED)

        if not database.DB_READY:
            raise TransientInfraError("Database is not ready")

        event_id = resolve_event_id(fields, raw_body)
        now = self.clock()

        try:
            async with database.transaction() as conn:
                context = ReconcileContext(
                    link_secret=self.settings.link_secret,
                    price_days=self.settings.price_days,
                    name_unit_days=self.settings.name_unit_days,
                    conn=conn,
                )
                resolution = await reconcile(fields, context, self.strategies)
                if resolution is None:
                    log_audit_event(
                        "WEBHOOK_UNMATCHED",
                        correlation_id=correlation_id,
                        details={"provider": provider, "event_id": event_id, "fields": fields},
                    )
                    return _ack(STATUS_UNMATCHED)

                if not await self.guard.mark_processed(provider, event_id, conn=conn):
                    raise DuplicateEvent(provider, event_id)

                grant = await self.ledger.grant(
                    resolution.telegram_id,
                    resolution.days,
                    now=now,
                    conn=conn,
                    correlation_id=correlation_id,
                )
                if resolution.order_id:
                    await database.mark_order_paid(resolution.order_id, now, conn=conn)

        except DuplicateEvent as e:
            logger.info(f"WEBHOOK_DUPLICATE provider={e.provider} event_id={e.event_id}")
            return _ack(STATUS_OK, duplicate=True)
        except GrantRefusedError as e:
            logger.warning(
                f"WEBHOOK_GRANT_REFUSED provider={provider} user={e.telegram_id} days={e.days} "
                f"fields={sanitize_for_logging(fields)}"
            )
            return _ack(STATUS_REFUSED)
        except TRANSIENT_EXCEPTIONS as e:
            logger.error(f"WEBHOOK_INFRA_ERROR provider={provider} event_id={event_id} error={type(e).__name__}: {e}")
            raise TransientInfraError(f"Storage failure while processing {provider}/{event_id}") from e
        except asyncpg.exceptions.DataError as e:
            # Postgres refuses a value taken from the payload; redelivery cannot fix it
            logger.error(
                f"WEBHOOK_PAYLOAD_REJECTED_BY_STORAGE provider={provider} error={type(e).__name__} "
                f"fields={sanitize_for_logging(fields)}"
            )
            return _ack(STATUS_INVALID)

        logger.info(
            f"WEBHOOK_GRANTED provider={provider} event_id={event_id} user={grant.telegram_id} "
            f"days={grant.days} strategy={resolution.strategy} expires_at={grant.expires_at.isoformat()}"
        )

        await self._notify(grant.telegram_id)

        return _ack(
            STATUS_OK,
            telegram_id=grant.telegram_id,
            days=grant.days,
            strategy=resolution.strategy,
            expires_at=grant.expires_at,
        )

    async def _notify(self, telegram_id: int) -> None:
        if self.gateway is None:
            return
        try:
            delivered = await self.gateway.notify_granted(telegram_id)
            if not delivered:
                logger.warning(f"GRANT_NOTIFICATION_NOT_DELIVERED user={telegram_id}")
        except Exception as e:
            # Grant is already committed; the delivery is acknowledged regardless
            logger.error(f"GRANT_NOTIFICATION_FAILED user={telegram_id} error={type(e).__name__}: {e}")
