"""
Webhook payload resolver.

Turns a provider webhook body into a flat ``field -> value`` map:

- application/x-www-form-urlencoded: pairs split on "&", both sides
  percent-decoded, PHP-style keys ("products[0][price]") normalised to dotted
  paths ("products.0.price")
- JSON: objects and arrays flattened into dotted paths ("products.0.price")

Providers sometimes percent-encode values twice; values are decoded up to two
levels in total. Unknown content types are read as form-encoded. Unknown keys
are preserved for the audit log.
"""

import json
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import unquote, unquote_plus

from app.services.payments.exceptions import InvalidPaymentPayloadError

logger = logging.getLogger(__name__)

MAX_DECODE_LEVELS = 2
MAX_BODY_BYTES = 256 * 1024
MAX_JSON_DEPTH = 32

_PERCENT_ESCAPE_RE = re.compile(r"%[0-9A-Fa-f]{2}")
_BRACKET_RE = re.compile(r"\[([^\[\]]*)\]")

CONTENT_TYPE_FORM = "application/x-www-form-urlencoded"
CONTENT_TYPE_JSON = "application/json"


def _media_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_json_content_type(content_type: Optional[str]) -> bool:
    media_type = _media_type(content_type)
    return media_type == CONTENT_TYPE_JSON or media_type.endswith("+json")


def decode_value(value: str, levels_used: int = 0) -> str:
    """
    Percent-decode value until no escapes remain or MAX_DECODE_LEVELS is reached.

    Args:
        value: Raw value
        levels_used: Decoding levels already applied (form decoding counts as one)
    """
    for _ in range(levels_used, MAX_DECODE_LEVELS):
        if not _PERCENT_ESCAPE_RE.search(value):
            break
        value = unquote(value)
    return value


def normalize_key(key: str) -> str:
    """"products[0][price]" -> "products.0.price"; plain keys are returned unchanged."""
    key = key.strip()
    if "[" not in key:
        return key
    head, _, _ = key.partition("[")
    parts = [head] + _BRACKET_RE.findall(key[len(head):])
    return ".".join(part for part in parts if part != "")


def parse_form(body: str) -> Dict[str, str]:
    """Parse form-encoded body. Pairs without "=" are skipped; later keys win."""
    fields: Dict[str, str] = {}
    if not body or not body.strip():
        return fields
    for pair in body.split("&"):
        key, sep, value = pair.partition("=")
        if not sep:
            continue
        key = normalize_key(unquote_plus(key))
        if not key:
            continue
        fields[key] = decode_value(unquote_plus(value), levels_used=1)
    return fields


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return decode_value(value)
    return str(value)


def flatten_json(
    data: Any,
    prefix: str = "",
    out: Optional[Dict[str, str]] = None,
    depth: int = 0,
) -> Dict[str, str]:
    """Flatten nested dicts/lists into dotted paths (at most MAX_JSON_DEPTH levels)."""
    if out is None:
        out = {}
    if depth > MAX_JSON_DEPTH:
        raise InvalidPaymentPayloadError(f"JSON payload nested deeper than {MAX_JSON_DEPTH} levels")
    if isinstance(data, dict):
        if not data and prefix:
            out[prefix] = ""
        for key, value in data.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            flatten_json(value, path, out, depth + 1)
    elif isinstance(data, list):
        if not data and prefix:
            out[prefix] = ""
        for index, value in enumerate(data):
            path = f"{prefix}.{index}" if prefix else str(index)
            flatten_json(value, path, out, depth + 1)
    elif prefix:
        out[prefix] = _stringify(data)
    return out


def _checked(fields: Dict[str, str]) -> Dict[str, str]:
    # Postgres text columns reject NUL
    for key, value in fields.items():
        if "\x00" in key or "\x00" in value:
            raise InvalidPaymentPayloadError(f"NUL character in field {key!r}")
    return fields


def resolve_payload(raw_body: bytes, content_type: Optional[str] = None) -> Dict[str, str]:
    """
    Resolve webhook body into a flat field map.

    Args:
        raw_body: Raw request body
        content_type: Content-Type header value (hint only)

    Returns:
        Flat map of field name -> string value

    Raises:
        InvalidPaymentPayloadError: body too large, not valid UTF-8, nested too
            deeply or carrying NUL characters
    """
    if raw_body is None:
        raw_body = b""
    if len(raw_body) > MAX_BODY_BYTES:
        raise InvalidPaymentPayloadError(f"Payload too large: {len(raw_body)} bytes")

    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidPaymentPayloadError(f"Payload is not valid UTF-8: {e}") from e

    if is_json_content_type(content_type):
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            logger.warning("PAYLOAD_JSON_INVALID falling back to form decoding: %s", e)
            return _checked(parse_form(body))
        except (ValueError, RecursionError) as e:
            raise InvalidPaymentPayloadError(f"JSON payload cannot be decoded: {type(e).__name__}") from e
        if not isinstance(data, (dict, list)):
            raise InvalidPaymentPayloadError(f"JSON payload must be an object or array, got {type(data).__name__}")
        return _checked(flatten_json(data))

    if content_type and _media_type(content_type) != CONTENT_TYPE_FORM:
        logger.info("PAYLOAD_CONTENT_TYPE_UNKNOWN content_type=%s reading as form", _media_type(content_type))

    return _checked(parse_form(body))
