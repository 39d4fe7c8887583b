"""Exception hierarchy for entitlement reconciliation

Services raise these; routers translate them into HTTP responses.
"""
from typing import Optional


class EntitlementError(Exception):
    """Base class for all reconciliation errors"""

    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(EntitlementError):
    """Missing credentials or a test-mode key used in a live path. Fatal, raised before any write."""


class BillingAPIError(EntitlementError):
    """Stripe request failed (network, timeout, rate limit, malformed response)"""

    status_code = 502


class PersistenceError(EntitlementError):
    """Database write failed and was rolled back"""


class WebhookSignatureError(EntitlementError):
    status_code = 400


class InvalidPayloadError(EntitlementError):
    status_code = 400
