"""
API module - HTTP endpoints for payment webhooks and health.
"""
from app.api.payment_webhook import register_payment_webhook

__all__ = ["register_payment_webhook"]
