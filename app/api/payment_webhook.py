"""
Payment Webhook API

POST /webhook/{provider} - payment provider notifications (Prodamus pay form).

Responses (JSON {"status": ...}):
- 200: processed, duplicate, or intentionally ignored
- 400: signature rejected in strict mode
- 405: any method other than POST
- 500: storage failure before acknowledgment (provider redelivers)

The handler only adapts HTTP to WebhookProcessor; all decisions are made there.
"""
import logging

from aiohttp import web

from app.core.exceptions import TransientInfraError
from app.services.payments.payload import MAX_BODY_BYTES
from app.services.payments.service import WebhookProcessor

logger = logging.getLogger(__name__)

WEBHOOK_ROUTE = "/webhook/{provider:[A-Za-z0-9_-]{1,64}}"


async def handle_payment_webhook(request: web.Request, processor: WebhookProcessor) -> web.Response:
    """
    Handle one provider delivery.

    Requirements:
    - Signature is verified over the raw body bytes
    - Duplicate deliveries get the same acknowledgment as the first one
    - Only infra failures produce 500
    """
    if request.method != "POST":
        return web.json_response({"status": "method_not_allowed"}, status=405, headers={"Allow": "POST"})

    provider = request.match_info["provider"].lower()

    if request.content_length is not None and request.content_length > MAX_BODY_BYTES:
        logger.warning(f"WEBHOOK_BODY_TOO_LARGE provider={provider} length={request.content_length}")
        result = processor.unreadable_body_result()
        return web.json_response(result.body, status=result.http_status)

    try:
        raw_body = await request.read()
    except web.HTTPRequestEntityTooLarge:
        logger.warning(f"WEBHOOK_BODY_TOO_LARGE provider={provider}")
        result = processor.unreadable_body_result()
        return web.json_response(result.body, status=result.http_status)

    try:
        result = await processor.process(
            provider,
            raw_body,
            request.headers,
            request.headers.get("Content-Type"),
        )
    except TransientInfraError as e:
        logger.error(f"WEBHOOK_FAILED provider={provider} error={e}")
        return web.json_response({"status": "error"}, status=500)

    return web.json_response(result.body, status=result.http_status)


def register_payment_webhook(app: web.Application, processor: WebhookProcessor) -> None:
    """Register /webhook/{provider} for all methods (non-POST answers 405)."""
    async def webhook_handler(request: web.Request) -> web.Response:
        return await handle_payment_webhook(request, processor)

    app.router.add_route("*", WEBHOOK_ROUTE, webhook_handler)
    logger.info("Payment webhook registered: POST /webhook/{provider}")
