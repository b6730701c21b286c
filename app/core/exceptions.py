"""
Core exception taxonomy for the payment webhook pipeline.

Used to distinguish business outcomes from system failures:
- ValidationError and DuplicateEvent are recovered inside the webhook
  handler and always acknowledged
- SignatureError is answered with 400 in strict mode and acknowledged as
  ignored in lenient mode
- TransientInfraError surfaces as HTTP 500 so the provider redelivers
- ConfigurationError stops the process at startup
"""


class ValidationError(Exception):
    """Raised when a webhook payload cannot be parsed or is insufficient for a grant."""
    pass


class SignatureError(Exception):
    """Raised when the provider signature does not match the request body."""
    pass


class DuplicateEvent(Exception):
    """Raised when a (provider, event_id) pair has already been processed.

    Idempotent no-op: the delivery is acknowledged exactly like the first one.
    """

    def __init__(self, provider: str, event_id: str):
        super().__init__(f"Event already processed: provider={provider}, event_id={event_id}")
        self.provider = provider
        self.event_id = event_id


class TransientInfraError(Exception):
    """Raised when storage or messaging calls fail transiently.

    Never retried inside the handler. Safe retry comes from provider redelivery.
    """
    pass


class ConfigurationError(Exception):
    """Raised at startup when a required secret or setting is missing or invalid."""
    pass
