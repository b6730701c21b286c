"""
Subscription service domain exceptions.
"""


class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors"""
    pass


class GrantRefusedError(SubscriptionServiceError):
    """Raised when a grant has a non-positive user id or day count.

    Refused grants are audited and never retried.
    """

    def __init__(self, telegram_id, days):
        super().__init__(f"Grant refused: telegram_id={telegram_id}, days={days}")
        self.telegram_id = telegram_id
        self.days = days
