"""
HTTP tests for POST /webhook/{provider} and GET /health.

Runs the aiohttp application in-process (aiohttp.test_utils); storage is the
in-memory FakeDatabase.
"""
import hashlib
import hmac
from datetime import timedelta
from urllib.parse import urlencode

import pytest
from aiohttp import test_utils

import config
import database
from app.services.payments.link_token import build_order_token
from app.services.payments.payload import MAX_BODY_BYTES
from app.services.payments.service import WebhookProcessor
from webhook_server import create_app

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


@pytest.fixture
def make_client(fake_db, mock_gateway, fixed_now):
    async def _make(settings):
        processor = WebhookProcessor(settings, gateway=mock_gateway, clock=lambda: fixed_now)
        client = test_utils.TestClient(test_utils.TestServer(create_app(processor)))
        await client.start_server()
        return client

    return _make


@pytest.fixture
async def client(make_client, settings):
    client = await make_client(settings)
    yield client
    await client.close()


@pytest.mark.asyncio
class TestPaymentWebhook:
    """Tests for the webhook endpoint"""

    async def test_token_payment_granted(self, client, fake_db, link_secret, fixed_now):
        token = build_order_token(123, 30, link_secret)
        body = urlencode({"status": "success", "order_num": token})

        resp = await client.post("/webhook/prodamus", data=body, headers=FORM_HEADERS)

        assert resp.status == 200
        assert await resp.json() == {"status": "ok"}
        assert fake_db.subscriptions[123]["expires_at"] == fixed_now + timedelta(days=30)

    async def test_duplicate_delivery_same_response(self, client, fake_db):
        body = urlencode({"status": "success", "payment_id": "E1", "customer_extra": "123", "days": "30"})

        first = await client.post("/webhook/prodamus", data=body, headers=FORM_HEADERS)
        second = await client.post("/webhook/prodamus", data=body, headers=FORM_HEADERS)

        assert first.status == second.status == 200
        assert await first.json() == await second.json() == {"status": "ok"}
        assert len(fake_db.upsert_calls) == 1

    async def test_json_body(self, client, fake_db):
        resp = await client.post(
            "/webhook/prodamus",
            json={"payment_status": "success", "customer_extra": 77, "products": [{"price": "3599.00"}]},
        )
        assert resp.status == 200
        assert 77 in fake_db.subscriptions

    async def test_failed_status_ignored(self, client, fake_db):
        body = urlencode({"status": "failed", "customer_extra": "123", "days": "30"})
        resp = await client.post("/webhook/prodamus", data=body, headers=FORM_HEADERS)
        assert resp.status == 200
        assert await resp.json() == {"status": "ignored"}
        assert fake_db.subscriptions == {}

    async def test_provider_name_lowercased(self, client, fake_db):
        body = urlencode({"status": "success", "payment_id": "E9", "customer_extra": "5", "days": "7"})
        await client.post("/webhook/Prodamus", data=body, headers=FORM_HEADERS)
        assert ("prodamus", "E9") in fake_db.events

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    async def test_non_post_rejected(self, client, method):
        resp = await client.request(method, "/webhook/prodamus")
        assert resp.status == 405
        assert resp.headers["Allow"] == "POST"

    async def test_oversized_body_acknowledged(self, client, fake_db):
        resp = await client.post("/webhook/prodamus", data=b"a" * (MAX_BODY_BYTES + 1), headers=FORM_HEADERS)
        assert resp.status == 200
        assert await resp.json() == {"status": "invalid"}

    async def test_storage_failure_returns_500(self, client, fake_db):
        fake_db.fail("insert_processed_event", ConnectionError("db down"))
        body = urlencode({"status": "success", "customer_extra": "123", "days": "30"})
        resp = await client.post("/webhook/prodamus", data=body, headers=FORM_HEADERS)
        assert resp.status == 500
        assert await resp.json() == {"status": "error"}

    async def test_db_not_ready_returns_500(self, client, fake_db, monkeypatch):
        monkeypatch.setattr(database, "DB_READY", False)
        body = urlencode({"status": "success", "customer_extra": "123", "days": "30"})
        resp = await client.post("/webhook/prodamus", data=body, headers=FORM_HEADERS)
        assert resp.status == 500


@pytest.mark.asyncio
class TestSignedWebhook:
    """Strict signature mode over HTTP"""

    async def test_bad_signature_rejected(self, make_client, make_settings, fake_db):
        client = await make_client(make_settings(provider_secret="sig-secret"))
        try:
            body = urlencode({"status": "success", "customer_extra": "123", "days": "30"})
            resp = await client.post(
                "/webhook/prodamus", data=body, headers={**FORM_HEADERS, "Sign": "forged"}
            )
            assert resp.status == 400
            assert await resp.json() == {"status": "invalid_signature"}
            assert fake_db.subscriptions == {}
        finally:
            await client.close()

    async def test_good_signature_accepted(self, make_client, make_settings, fake_db):
        client = await make_client(make_settings(provider_secret="sig-secret"))
        try:
            body = urlencode({"status": "success", "customer_extra": "123", "days": "30"}).encode()
            signature = "sha256=" + hmac.new(b"sig-secret", body, hashlib.sha256).hexdigest()
            resp = await client.post(
                "/webhook/prodamus", data=body, headers={**FORM_HEADERS, "X-Signature": signature}
            )
            assert resp.status == 200
            assert 123 in fake_db.subscriptions
        finally:
            await client.close()

    async def test_lenient_mismatch_acknowledged(self, make_client, make_settings, fake_db):
        settings = make_settings(provider_secret="sig-secret", signature_mode=config.SIGNATURE_MODE_LENIENT)
        client = await make_client(settings)
        try:
            body = urlencode({"status": "success", "customer_extra": "123", "days": "30"})
            resp = await client.post("/webhook/prodamus", data=body, headers=FORM_HEADERS)
            assert resp.status == 200
            assert await resp.json() == {"status": "ignored"}
        finally:
            await client.close()

    async def test_oversized_body_rejected_when_signatures_required(self, make_client, make_settings, fake_db):
        """A body too large to read cannot be verified"""
        client = await make_client(make_settings(provider_secret="sig-secret"))
        try:
            resp = await client.post(
                "/webhook/prodamus",
                data=b"a" * (MAX_BODY_BYTES + 1),
                headers={**FORM_HEADERS, "Sign": "forged"},
            )
            assert resp.status == 400
            assert await resp.json() == {"status": "invalid_signature"}
        finally:
            await client.close()

    async def test_forged_undecodable_body_rejected(self, make_client, make_settings, fake_db):
        client = await make_client(make_settings(provider_secret="sig-secret"))
        try:
            resp = await client.post(
                "/webhook/prodamus", data=b"\xff\xfe", headers={**FORM_HEADERS, "Sign": "forged"}
            )
            assert resp.status == 400
        finally:
            await client.close()

    async def test_deeply_nested_json_is_not_a_server_error(self, make_client, make_settings, fake_db):
        client = await make_client(make_settings(provider_secret="sig-secret"))
        try:
            body = b'{"a":' * 3000 + b"1" + b"}" * 3000
            resp = await client.post(
                "/webhook/prodamus", data=body, headers={"Content-Type": "application/json", "Sign": "forged"}
            )
            assert resp.status == 400
        finally:
            await client.close()


@pytest.mark.asyncio
class TestHealth:
    """Tests for GET /health"""

    async def test_healthy(self, client):
        resp = await client.get("/health")
        data = await resp.json()
        assert resp.status == 200
        assert data["status"] == "ok"
        assert data["db_ready"] is True
        assert data["timestamp"].endswith("Z")

    async def test_degraded(self, client, monkeypatch):
        monkeypatch.setattr(database, "DB_READY", False)
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "degraded"
