"""
Unit tests for trust-boundary validation and log redaction.
"""
import pytest

from app.utils.security import (
    REDACTED,
    mask_secret,
    redact_text,
    sanitize_for_logging,
    validate_telegram_id,
)


class TestValidateTelegramId:
    @pytest.mark.parametrize("value", [1, 123456789, "42"])
    def test_valid(self, value):
        assert validate_telegram_id(value) == (True, None)

    @pytest.mark.parametrize("value", [0, -1, True, "abc", None, 2**63])
    def test_invalid(self, value):
        is_valid, error = validate_telegram_id(value)
        assert is_valid is False
        assert error


class TestMaskSecret:
    def test_keeps_tail(self):
        assert mask_secret("supersecret1234") == "***********1234"

    @pytest.mark.parametrize("value", [None, "", "abc"])
    def test_short_values_fully_masked(self, value):
        assert mask_secret(value) == "****"


class TestSanitizeForLogging:
    """Webhook payloads are logged without PII or secrets"""

    def test_pii_keys_redacted(self):
        fields = {
            "customer_phone": "+79001234567",
            "customer_email": "user@example.com",
            "card_mask": "4276****1234",
            "order_num": "ord-1",
        }
        sanitized = sanitize_for_logging(fields)
        assert sanitized["customer_phone"] == REDACTED
        assert sanitized["customer_email"] == REDACTED
        assert sanitized["card_mask"] == REDACTED
        assert sanitized["order_num"] == "ord-1"

    def test_secret_keys_masked(self):
        sanitized = sanitize_for_logging({"signature": "abcdef123456"})
        assert sanitized["signature"] == "********3456"

    def test_free_text_scrubbed(self):
        sanitized = sanitize_for_logging({"comment": "pay from 4111 1111 1111 1111, mail a.b@mail.ru"})
        assert "4111" not in sanitized["comment"]
        assert "a.b@mail.ru" not in sanitized["comment"]

    def test_nested(self):
        sanitized = sanitize_for_logging({"customer": {"phone": "+7900"}, "items": [{"name": "x"}]})
        assert sanitized == {"customer": {"phone": REDACTED}, "items": [{"name": "x"}]}

    def test_original_not_modified(self):
        fields = {"phone": "+7900"}
        sanitize_for_logging(fields)
        assert fields == {"phone": "+7900"}


class TestRedactText:
    def test_plain_text_unchanged(self):
        assert redact_text("order 123 paid") == "order 123 paid"

    def test_card_number(self):
        assert redact_text("card 4111111111111111") == f"card {REDACTED}"
