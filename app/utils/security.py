"""
Security utilities for trust boundaries and log redaction.

This module provides security utilities for:
- Telegram ID validation
- Secret masking
- PII redaction of webhook payloads before they reach the logs
- Security logging
"""

import logging
import re
from typing import Optional, Tuple, Any, Dict

logger = logging.getLogger(__name__)

# ====================================================================================
# INPUT TRUST BOUNDARIES
# ====================================================================================

# Telegram user IDs are positive and fit into a signed 64-bit column
MAX_TELEGRAM_ID = 2**63 - 1


def validate_telegram_id(telegram_id: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate Telegram ID.

    Args:
        telegram_id: Telegram ID to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if isinstance(telegram_id, bool):
        return False, "Telegram ID must be an integer"

    if not isinstance(telegram_id, int):
        try:
            telegram_id = int(telegram_id)
        except (ValueError, TypeError):
            return False, "Telegram ID must be an integer"

    if telegram_id <= 0:
        return False, "Telegram ID must be positive"

    if telegram_id > MAX_TELEGRAM_ID:
        return False, "Telegram ID exceeds maximum value"

    return True, None


# ====================================================================================
# SECRET & PII SAFETY
# ====================================================================================

# Keys whose values are masked (substring match, case-insensitive)
SECRET_KEYS = [
    "token", "password", "secret", "api_key", "api_token",
    "bot_token", "database_url", "sign", "signature",
]

# Keys whose values are personal data and are fully redacted
PII_KEYS = [
    "phone", "email", "card", "pan", "cvv", "cvc", "passport", "address",
    "customer_name", "fio",
]

REDACTED = "***REDACTED***"

# Bare card numbers and e-mails can appear in free-text fields
_CARD_NUMBER_RE = re.compile(r"\b(?:\d[ -]?){13,19}\b")
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")


def mask_secret(secret: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask secret in logs.

    Args:
        secret: Secret to mask
        visible_chars: Number of characters to show at the end

    Returns:
        Masked secret (e.g., "****token1234")
    """
    if not secret:
        return "****"

    if len(secret) <= visible_chars:
        return "****"

    return "*" * (len(secret) - visible_chars) + secret[-visible_chars:]


def redact_text(value: str) -> str:
    value = _CARD_NUMBER_RE.sub(REDACTED, value)
    return _EMAIL_RE.sub(REDACTED, value)


def sanitize_for_logging(data: Any, sensitive_keys: Optional[list] = None) -> Any:
    """
    Sanitize data for logging.

    Secrets are masked, personal data (phone, e-mail, card) is redacted and
    free-text values are scrubbed of card numbers and e-mail addresses.
    Nested dicts and lists are handled recursively. Keys are never dropped so
    the audit trail still shows which fields the provider sent.

    Args:
        data: Data to sanitize
        sensitive_keys: List of keys to mask (default: SECRET_KEYS)

    Returns:
        Sanitized copy of data
    """
    if sensitive_keys is None:
        sensitive_keys = SECRET_KEYS

    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(pii in key_lower for pii in PII_KEYS):
                sanitized[key] = REDACTED
            elif any(sensitive in key_lower for sensitive in sensitive_keys):
                sanitized[key] = mask_secret(str(value))
            elif isinstance(value, (dict, list)):
                sanitized[key] = sanitize_for_logging(value, sensitive_keys)
            elif isinstance(value, str):
                sanitized[key] = redact_text(value)
            else:
                sanitized[key] = value
        return sanitized

    if isinstance(data, list):
        return [sanitize_for_logging(item, sensitive_keys) for item in data]

    if isinstance(data, str):
        return redact_text(data)

    return data


# ====================================================================================
# SECURITY LOGGING POLICY
# ====================================================================================

def log_security_warning(
    event: str,
    telegram_id: Optional[int] = None,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
):
    """
    Log security warning (signature mismatch, forged token, refused grant).

    Args:
        event: Security event description
        telegram_id: Telegram ID (if applicable)
        correlation_id: Correlation ID for tracing
        details: Additional details (will be sanitized)
    """
    log_data = {
        "event": event,
        "telegram_id": telegram_id,
        "correlation_id": correlation_id,
    }

    if details:
        log_data["details"] = sanitize_for_logging(details)

    logger.warning(f"[SECURITY_WARNING] {event} details={log_data.get('details')}", extra=log_data)


def log_audit_event(
    event: str,
    telegram_id: Optional[int] = None,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
):
    """
    Log audit event (grant applied, grant refused, delivery ignored).

    Args:
        event: Audit event description
        telegram_id: Telegram ID (if applicable)
        correlation_id: Correlation ID for tracing
        details: Additional details (will be sanitized)
    """
    log_data = {
        "event": event,
        "telegram_id": telegram_id,
        "correlation_id": correlation_id,
    }

    if details:
        log_data["details"] = sanitize_for_logging(details)

    logger.info(f"[AUDIT_EVENT] {event} user={telegram_id} details={log_data.get('details')}", extra=log_data)
