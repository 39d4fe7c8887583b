"""Stripe access layer: customers, subscriptions and period boundaries"""
import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

import stripe

from app.core.config import settings
from app.core.exceptions import BillingAPIError, ConfigurationError
from app.utils.dates import from_timestamp

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)


def _get_stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def _first_item(subscription: Any) -> Any:
    items = _get_stripe_value(subscription, "items")
    data = _get_stripe_value(items, "data") or []
    return data[0] if data else None


def require_live_stripe_key() -> None:
    """Refuse to touch Stripe without a key, or with a test-mode key outside development.

    Raises:
        ConfigurationError: If the key is missing or is a test-mode key in a live path
    """
    key = settings.STRIPE_SECRET_KEY
    if not key:
        raise ConfigurationError("STRIPE_SECRET_KEY is not set", code="missing_stripe_key")
    if key.startswith("sk_test_") and not settings.ALLOW_STRIPE_TEST_KEYS:
        raise ConfigurationError(
            "Test mode Stripe key detected. Use a live key (sk_live_...) or set ALLOW_STRIPE_TEST_KEYS for development.",
            code="test_mode_key"
        )
    stripe.api_key = key


# ============================================================================
# CORE STRIPE OPERATIONS
# ============================================================================

def _call(operation: str, func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except stripe.StripeError as e:
        code = getattr(e, "code", None)
        logger.error(f"Stripe {operation} failed: {e}")
        raise BillingAPIError(f"Stripe {operation} failed: {e.user_message or str(e)}", code=code) from e


def find_customer_by_email(email: str, user_id: Optional[int] = None) -> Optional[Any]:
    """Return the Stripe customer for an email, or None.

    Falls back to a metadata search on user_id for customers created without an email.
    """
    if email:
        customers = _call("customer lookup", stripe.Customer.list, email=email, limit=1)
        data = _get_stripe_value(customers, "data") or []
        if data:
            return data[0]

    if user_id is not None:
        result = _call(
            "customer search",
            stripe.Customer.search,
            query=f"metadata['user_id']:'{user_id}'",
            limit=1
        )
        data = _get_stripe_value(result, "data") or []
        if data:
            return data[0]

    return None


def retrieve_customer(customer_id: str) -> Any:
    return _call("customer retrieve", stripe.Customer.retrieve, customer_id)


def list_subscriptions(customer_id: str, statuses: Iterable[str] = ("active",)) -> List[Any]:
    """List a customer's subscriptions across the given statuses"""
    subscriptions = []
    for status in statuses:
        result = _call(
            f"subscription list ({status})",
            stripe.Subscription.list,
            customer=customer_id,
            status=status,
            limit=100
        )
        subscriptions.extend(_get_stripe_value(result, "data") or [])
    return subscriptions


def retrieve_subscription(subscription_id: str) -> Any:
    return _call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)


def cancel_subscription(subscription_id: str) -> Any:
    logger.info(f"Canceling Stripe subscription {subscription_id}")
    return _call("subscription cancel", stripe.Subscription.cancel, subscription_id)


# ============================================================================
# SUBSCRIPTION FIELDS
# ============================================================================

def get_subscription_product_id(subscription: Any) -> Optional[str]:
    """Product id of the subscription's first item (expanded or not)"""
    price = _get_stripe_value(_first_item(subscription), "price")
    product = _get_stripe_value(price, "product")
    if product is None or isinstance(product, str):
        return product
    return _get_stripe_value(product, "id")


def _add_months(dt: datetime, months: int) -> datetime:
    # Keep the day of month, or the last day if the target month is shorter
    month = dt.month + months
    year = dt.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def compute_period_end(created: int, interval: str, interval_count: int = 1) -> datetime:
    """Period end computed from the creation time and the billing interval.

    Months and years use calendar arithmetic (Jan 31 + 1 month = Feb 28/29).

    Raises:
        ValueError: If the interval is not day, week, month or year
    """
    start = from_timestamp(created)
    count = int(interval_count or 1)

    if interval == "day":
        return start + timedelta(days=count)
    if interval == "week":
        return start + timedelta(weeks=count)
    if interval == "month":
        return _add_months(start, count)
    if interval == "year":
        return _add_months(start, 12 * count)
    raise ValueError(f"Unsupported billing interval: {interval}")



def _raw_period_end(subscription: Any) -> Optional[int]:
    # Newer API versions moved current_period_end onto the subscription items
    value = _get_stripe_value(subscription, "current_period_end")
    if value is None:
        value = _get_stripe_value(_first_item(subscription), "current_period_end")
    return value


def resolve_period_end(subscription: Any) -> datetime:
    """Period end for a subscription, tolerating incomplete list results.

    Trialing subscriptions use trial_end. Otherwise current_period_end is read,
    then the full subscription is re-fetched, then the end is computed from
    created + recurring interval.

    Raises:
        BillingAPIError: If the re-fetch fails or nothing usable is present
    """
    if _get_stripe_value(subscription, "status") == "trialing":
        trial_end = _get_stripe_value(subscription, "trial_end")
        if trial_end:
            return from_timestamp(trial_end)

    period_end = _raw_period_end(subscription)
    if period_end:
        return from_timestamp(period_end)

    subscription_id = _get_stripe_value(subscription, "id")
    logger.warning(f"Subscription {subscription_id} has no current_period_end, re-fetching")
    full = retrieve_subscription(subscription_id)
    period_end = _raw_period_end(full)
    if period_end:
        return from_timestamp(period_end)

    recurring = _get_stripe_value(_get_stripe_value(_first_item(full), "price"), "recurring")
    interval = _get_stripe_value(recurring, "interval")
    created = _get_stripe_value(full, "created") or _get_stripe_value(subscription, "created")
    if not interval or not created:
        raise BillingAPIError(f"Subscription {subscription_id} has no period end, interval or creation time")

    computed = compute_period_end(created, interval, _get_stripe_value(recurring, "interval_count", 1))
    logger.info(f"Computed period end {computed.isoformat()} for subscription {subscription_id} from {interval} interval")
    return computed
