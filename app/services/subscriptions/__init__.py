"""
Subscription Service Package
"""

from app.services.subscriptions.service import (
    MAX_GRANT_DAYS,
    GrantResult,
    SubscriptionLedger,
    compute_new_expiry,
)
from app.services.subscriptions.exceptions import (
    GrantRefusedError,
    SubscriptionServiceError,
)

__all__ = [
    "MAX_GRANT_DAYS",
    "GrantResult",
    "SubscriptionLedger",
    "compute_new_expiry",
    "GrantRefusedError",
    "SubscriptionServiceError",
]
