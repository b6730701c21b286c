"""
HTTP Server: payment webhooks and health check

Endpoints:
- POST /webhook/{provider} - payment notifications (see app/api/payment_webhook.py)
- GET /health - liveness; does NOT touch the database, only reads DB_READY
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from aiohttp import web

import database
import redis_client
from app.api.payment_webhook import register_payment_webhook
from app.services.payments.payload import MAX_BODY_BYTES
from app.services.payments.service import WebhookProcessor

logger = logging.getLogger(__name__)

SERVICE_NAME = "soulway-payments"


async def health_handler(request: web.Request) -> web.Response:
    """
    Health check endpoint handler

    Response format:
        {
            "status": "ok" | "degraded",
            "db_ready": true | false,
            "redis_ready": true | false,
            "timestamp": "2024-01-01T12:00:00Z"
        }

    HTTP 200 in both cases; monitoring distinguishes by "status".
    """
    db_ready = database.DB_READY
    response_data: Dict[str, Any] = {
        "status": "ok" if db_ready else "degraded",
        "db_ready": db_ready,
        "redis_ready": redis_client.REDIS_READY,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    return web.json_response(response_data, status=200)


def create_app(processor: WebhookProcessor) -> web.Application:
    """Создать aiohttp приложение с health endpoint и payment webhook"""
    # Payload layer enforces the exact limit
    app = web.Application(client_max_size=MAX_BODY_BYTES + 1024)
    app.router.add_get("/health", health_handler)

    async def root_handler(request: web.Request) -> web.Response:
        return web.json_response({"service": SERVICE_NAME, "health": "/health"})

    app.router.add_get("/", root_handler)
    register_payment_webhook(app, processor)
    return app


async def start_server(
    processor: WebhookProcessor,
    host: str = "0.0.0.0",
    port: int = 8080,
    shutdown_timeout: float = 30.0,
) -> web.AppRunner:
    """
    Start the HTTP server.

    Args:
        processor: Webhook processor
        host: Listen host (0.0.0.0 for containers)
        port: Listen port
        shutdown_timeout: Seconds in-flight requests get to finish on cleanup

    Returns:
        AppRunner; call runner.cleanup() to stop
    """
    app = create_app(processor)
    runner = web.AppRunner(app, shutdown_timeout=shutdown_timeout)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server started on http://{host}:{port} (webhook: /webhook/{{provider}}, health: /health)")
    return runner
