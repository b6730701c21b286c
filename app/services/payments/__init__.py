"""
Payment Service Layer

This package turns payment provider webhooks into subscription grants and
builds the payment links that feed them.
"""

from app.services.payments.service import (
    WebhookProcessor,
    WebhookResult,
)
from app.services.payments.links import (
    PaymentLink,
    Tariff,
    create_payment_link,
    create_tariff_links,
    extract_price,
    load_tariffs,
)
from app.services.payments.link_token import (
    build_order_token,
    parse_order_token,
)
from app.services.payments.signature import verify_webhook_signature
from app.services.payments.payload import resolve_payload
from app.services.payments.reconciler import (
    DirectFieldMatch,
    NameInference,
    PersistedOrderMatch,
    PriceInference,
    Resolution,
    TokenMatch,
    reconcile,
)
from app.services.payments.exceptions import (
    PaymentServiceError,
    InvalidPaymentPayloadError,
    PaymentLinkError,
)

__all__ = [
    "WebhookProcessor",
    "WebhookResult",
    "PaymentLink",
    "Tariff",
    "create_payment_link",
    "create_tariff_links",
    "extract_price",
    "load_tariffs",
    "build_order_token",
    "parse_order_token",
    "verify_webhook_signature",
    "resolve_payload",
    "DirectFieldMatch",
    "NameInference",
    "PersistedOrderMatch",
    "PriceInference",
    "Resolution",
    "TokenMatch",
    "reconcile",
    "PaymentServiceError",
    "InvalidPaymentPayloadError",
    "PaymentLinkError",
]
