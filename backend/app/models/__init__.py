"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.entitlement import Entitlement
from app.models.usage_limit import UsageLimit
from app.models.webhook_attempt import WebhookAttempt
from app.models.stripe_event import StripeEvent
from app.models.stripe_product import StripeProduct

# Export all for convenience
__all__ = [
    "Base", "User", "Entitlement", "UsageLimit",
    "WebhookAttempt", "StripeEvent", "StripeProduct"
]
