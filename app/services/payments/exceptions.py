"""
Payment Service Domain Exceptions

All exceptions raised by the payment service layer.
"""

from app.core.exceptions import ValidationError


class PaymentServiceError(Exception):
    """Base exception for payment service errors"""
    pass


class InvalidPaymentPayloadError(PaymentServiceError, ValidationError):
    """Raised when a webhook body cannot be decoded into a field map"""
    pass


class PaymentLinkError(PaymentServiceError):
    """Raised when a payment link cannot be built (bad user, days or price)"""
    pass
