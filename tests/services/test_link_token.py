"""
Unit tests for the order token codec.

Tests focus on:
- Deterministic building
- Verification (tampering, wrong secret, malformed input)
- Percent-encoded tokens
"""
import pytest

from app.services.payments.link_token import (
    build_order_token,
    looks_like_order_token,
    parse_order_token,
)

SECRET = "s3cret"


class TestBuildOrderToken:
    """Tests for build_order_token"""

    def test_format(self):
        """Token has prefix, user, days and a 64-char hex MAC"""
        token = build_order_token(123456789, 30, SECRET)
        prefix, uid, days, mac = token.split(":")
        assert prefix == "swb"
        assert uid == "123456789"
        assert days == "30"
        assert len(mac) == 64
        int(mac, 16)

    def test_deterministic(self):
        assert build_order_token(1, 90, SECRET) == build_order_token(1, 90, SECRET)

    def test_depends_on_secret(self):
        assert build_order_token(1, 90, SECRET) != build_order_token(1, 90, "other")

    @pytest.mark.parametrize("telegram_id,days", [(0, 30), (-5, 30), (5, 0), (5, -1)])
    def test_rejects_non_positive(self, telegram_id, days):
        with pytest.raises(ValueError):
            build_order_token(telegram_id, days, SECRET)

    def test_rejects_empty_secret(self):
        with pytest.raises(ValueError):
            build_order_token(1, 30, "")


class TestParseOrderToken:
    """Tests for parse_order_token"""

    def test_valid_token(self):
        token = build_order_token(123456789, 30, SECRET)
        assert parse_order_token(token, SECRET) == (123456789, 30)

    def test_wrong_secret(self):
        token = build_order_token(123456789, 30, SECRET)
        assert parse_order_token(token, "wrong") is None

    def test_tampered_days(self):
        """Changing the period invalidates the MAC"""
        token = build_order_token(123456789, 30, SECRET)
        tampered = token.replace(":30:", ":365:")
        assert parse_order_token(tampered, SECRET) is None

    def test_tampered_user(self):
        token = build_order_token(111, 30, SECRET)
        tampered = token.replace("swb:111:", "swb:222:")
        assert parse_order_token(tampered, SECRET) is None

    def test_percent_encoded_once(self):
        token = build_order_token(42, 90, SECRET)
        encoded = token.replace(":", "%3A")
        assert parse_order_token(encoded, SECRET) == (42, 90)

    def test_surrounding_whitespace(self):
        token = build_order_token(42, 90, SECRET)
        assert parse_order_token(f"  {token} ", SECRET) == (42, 90)

    @pytest.mark.parametrize("value", [
        None,
        "",
        "swb:1:30",
        "swb:1:30:abc:extra",
        "xyz:1:30:" + "0" * 64,
        "swb:+1:30:" + "0" * 64,
        "swb:0:30:" + "0" * 64,
        "swb:1:-30:" + "0" * 64,
        "swb:١:30:" + "0" * 64,
        "12345",
    ])
    def test_malformed(self, value):
        assert parse_order_token(value, SECRET) is None

    def test_empty_secret_never_verifies(self):
        token = build_order_token(1, 30, SECRET)
        assert parse_order_token(token, "") is None

    @pytest.mark.parametrize("position", range(64))
    def test_any_single_mac_character_change_rejected(self, position):
        """No single-character edit of the MAC yields a valid token"""
        token = build_order_token(123456789, 30, SECRET)
        head, mac = token.rsplit(":", 1)
        replacement = "0" if mac[position] != "0" else "1"
        flipped = mac[:position] + replacement + mac[position + 1:]
        assert parse_order_token(f"{head}:{flipped}", SECRET) is None


class TestLooksLikeOrderToken:
    """Tests for looks_like_order_token"""

    def test_prefix_detected(self):
        assert looks_like_order_token("swb:1:2:bad") is True

    def test_encoded_prefix_detected(self):
        assert looks_like_order_token("swb%3A1%3A2%3Abad") is True

    @pytest.mark.parametrize("value", [None, "", "a1b2c3", "12345"])
    def test_other_values(self, value):
        assert looks_like_order_token(value) is False
