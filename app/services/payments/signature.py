"""
Provider webhook signature verification.

The provider signs the raw request body with HMAC-SHA256. Integrations differ
in how they present it: lowercase hex, base64, optionally prefixed with
"sha256=". All forms are compared in constant time.
"""

import base64
import hashlib
import hmac
import logging
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

SHA256_PREFIX = "sha256="


def compute_signatures(raw_body: bytes, secret: str) -> tuple:
    """Return (hex, base64) encodings of HMAC-SHA256(raw_body, secret)."""
    digest = hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha256).digest()
    return digest.hex(), base64.b64encode(digest).decode("ascii")


def _normalize_signature(signature: str) -> str:
    value = signature.strip()
    if value[:len(SHA256_PREFIX)].lower() == SHA256_PREFIX:
        value = value[len(SHA256_PREFIX):].strip()
    return value


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify provider signature over the raw request body.

    Args:
        raw_body: Raw request body
        signature: Presented signature (header or body field)
        secret: Provider signing secret; empty disables verification

    Returns:
        True if the signature matches the hex or base64 HMAC, or verification is disabled
    """
    if not secret:
        return True

    if not signature or not signature.strip():
        return False

    presented = _normalize_signature(signature).encode("utf-8")
    expected_hex, expected_b64 = compute_signatures(raw_body, secret)

    # Both comparisons always run; compare_digest does not leak where a mismatch is
    hex_match = hmac.compare_digest(expected_hex.encode("ascii"), presented)
    b64_match = hmac.compare_digest(expected_b64.encode("ascii"), presented)
    return hex_match or b64_match


def extract_signature(
    headers: Mapping[str, str],
    fields: Optional[Mapping[str, str]] = None,
    header_names: Sequence[str] = ("Sign", "Signature", "X-Signature", "X-Webhook-Signature"),
    field_names: Sequence[str] = ("signature", "sign"),
) -> Optional[str]:
    """
    Find the presented signature.

    Headers are checked first (first non-empty wins), then body fields.

    Args:
        headers: Request headers (case-insensitive mapping)
        fields: Flat payload fields (JSON bodies may carry the signature inline)
        header_names: Header names to check in order
        field_names: Payload field names to check in order

    Returns:
        Signature string or None
    """
    for name in header_names:
        value = headers.get(name)
        if value and value.strip():
            return value
    if fields:
        for name in field_names:
            value = fields.get(name)
            if value and value.strip():
                return value
    return None
