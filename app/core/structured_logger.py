"""
Structured logging normalization.

Single contract for lifecycle logs (webhook deliveries, worker runs, shutdown):
- component
- operation
- correlation_id (optional)
- outcome
- duration_ms (optional, omitted if None)
- reason (optional)
- any extra scalar fields (provider, event_id, ...)

Do not log secrets or full payloads.
"""
from logging import Logger
from typing import Any, Optional


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    correlation_id: Optional[str] = None,
    outcome: str,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
    **fields: Any,
) -> None:
    """
    Emit structured log event.

    Args:
        logger: Logger instance
        component: Component name ("webhook", "worker", "infra", "shutdown")
        operation: Operation name ("payment_webhook", "db_recovered", "shutdown_start")
        correlation_id: Delivery/iteration identifier (optional)
        outcome: Outcome ("success", "ok", "ignored", "failed", ...)
        duration_ms: Duration in milliseconds (omitted if None)
        reason: Short non-PII explanation (optional)
        level: Log level ("info", "warning", "error", "critical", "debug")
        message: Optional override message
        **fields: Extra scalar fields appended to the message and to the record

    Example:
        log_event(logger, component="webhook", operation="payment_webhook",
                  outcome="ok", duration_ms=12, provider="prodamus")
        # -> "webhook payment_webhook outcome=ok duration_ms=12 provider=prodamus"
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
    if reason is not None:
        extra["reason"] = reason
    extra.update({k: v for k, v in fields.items() if v is not None})

    if message is None:
        parts = [f"{component} {operation} outcome={outcome}"]
        for key in ("duration_ms", "reason", *fields):
            if key in extra:
                parts.append(f"{key}={extra[key]}")
        message = " ".join(parts)

    log_method = getattr(logger, level.lower(), logger.info)
    log_method(message, extra=extra)
