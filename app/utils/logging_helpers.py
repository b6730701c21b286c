"""
Structured logging helpers for observability.

This module provides structured logging utilities to ensure consistent
logging patterns across the webhook handler and background workers.

Logging contract:
- correlation_id: Unique identifier for a webhook delivery or worker iteration
- component: Component name (webhook, worker, service)
- operation: Operation name (payment_webhook, membership_enforcer_iteration, ...)
- outcome: success | degraded | failed | skipped

Failure taxonomy:
- infra_error: Infrastructure errors (DB, network, timeouts)
- dependency_error: External dependency errors (Telegram API, payment provider)
- domain_error: Business logic errors (validation, business rules)
- unexpected_error: Unexpected errors (bugs, unhandled exceptions)
"""

import logging
import json
import uuid
from typing import Optional
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variable for correlation ID (per-delivery/iteration)
_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    """
    Generate a unique correlation ID for delivery/iteration tracking.

    Returns:
        UUID string (e.g., "550e8400-e29b-41d4-a716-446655440000")
    """
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str) -> None:
    """
    Set correlation ID for current context.

    Args:
        correlation_id: Correlation ID to set
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """
    Get correlation ID from current context.

    Returns:
        Correlation ID if set, None otherwise
    """
    return _correlation_id.get()


# Outcome -> level of the emitted JSON line
_OUTCOME_LEVELS = {
    "failed": logging.ERROR,
    "degraded": logging.WARNING,
}


def _emit_worker_event(event: str, worker_name: str, outcome: Optional[str] = None, **fields) -> None:
    """Write one worker event as a JSON line; None-valued fields are left out."""
    level = _OUTCOME_LEVELS.get(outcome, logging.INFO)
    record = {
        "event": event,
        "worker": worker_name,
        "correlation_id": get_correlation_id(),
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": logging.getLevelName(level),
    }
    if outcome is not None:
        record["outcome"] = outcome
    record.update({key: value for key, value in fields.items() if value is not None})
    logger.log(level, json.dumps(record, default=str))


def log_worker_iteration_start(worker_name: str, iteration_number: Optional[int] = None, **kwargs) -> str:
    """
    Start a worker iteration: new correlation ID, ITERATION_START event.

    Returns:
        Correlation ID of the iteration
    """
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    _emit_worker_event("ITERATION_START", worker_name, iteration_number=iteration_number, **kwargs)
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """
    Finish a worker iteration.

    Args:
        worker_name: Worker name ("membership_enforcer")
        outcome: "success" | "degraded" | "failed" | "skipped" (failed logs at ERROR, degraded at WARNING)
        items_processed: Users removed in this iteration
        error_type: classify_error() result for failed iterations
        duration_ms: Iteration duration
    """
    _emit_worker_event(
        "ITERATION_END",
        worker_name,
        outcome=outcome,
        items_processed=items_processed,
        error_type=error_type,
        duration_ms=round(duration_ms, 1) if duration_ms is not None else None,
        **kwargs
    )


def classify_error(exception: Exception) -> str:
    """
    Classify error type for failure taxonomy.

    Args:
        exception: Exception to classify

    Returns:
        Error type: "infra_error" | "dependency_error" | "domain_error" | "unexpected_error"
    """
    import asyncio
    import asyncpg
    from aiogram.exceptions import TelegramAPIError
    from app.core.exceptions import (
        ValidationError,
        SignatureError,
        DuplicateEvent,
        TransientInfraError,
    )
    from app.services.payments.exceptions import PaymentServiceError
    from app.services.subscriptions.exceptions import SubscriptionServiceError

    # Domain errors (business logic)
    if isinstance(exception, (
        ValidationError,
        SignatureError,
        DuplicateEvent,
        PaymentServiceError,
        SubscriptionServiceError,
    )):
        return "domain_error"

    # Dependency errors (Telegram Bot API)
    if isinstance(exception, TelegramAPIError):
        return "dependency_error"

    # Infrastructure errors (DB, network, timeouts)
    if isinstance(exception, (
        TransientInfraError,
        asyncpg.PostgresError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return "infra_error"

    return "unexpected_error"
