"""Billing webhook intake: verification, idempotency and event handlers"""
import json
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import stripe
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings, DEAD_SUBSCRIPTION_STATUSES
from app.core.exceptions import (
    ConfigurationError, InvalidPayloadError, PersistenceError, WebhookSignatureError
)
from app.core.metrics import webhook_events_counter
from app.models.stripe_event import StripeEvent
from app.models.user import User
from app.models.webhook_attempt import WebhookAttempt
from app.schemas.webhooks import BillingEvent
from app.services import stripe_service
from app.services.entitlement_service import (
    ACTIVE_OR_TRIALING_STATUSES, clear_entitlement, current_source_version,
    mark_entitlement_status, reconcile_customer_entitlement
)
from app.services.plan_service import load_product_plans, tier_priority
from app.services.stripe_service import _get_stripe_value
from app.utils.dates import utcnow

logger = logging.getLogger("webhooks")


def compute_backoff(attempt_number: int) -> timedelta:
    """Delay before the retry that follows attempt N: base * factor^(N-1) minutes (5, 15, 45, ...)"""
    minutes = settings.WEBHOOK_BACKOFF_BASE_MINUTES * settings.WEBHOOK_BACKOFF_FACTOR ** (attempt_number - 1)
    return timedelta(minutes=minutes)


# ============================================================================
# PARSING AND IDEMPOTENCY
# ============================================================================

def parse_billing_event(payload: bytes, sig_header: Optional[str], is_retry: bool = False) -> BillingEvent:
    """Verify and parse a webhook body.

    Live deliveries are verified against STRIPE_WEBHOOK_SECRET. Retry
    deliveries are authenticated by the caller with the internal API key and
    carry no Stripe signature.

    Raises:
        ConfigurationError: If no webhook secret is configured outside development
        WebhookSignatureError: If the signature does not match
        InvalidPayloadError: If the body is not a Stripe event
    """
    if not is_retry:
        if settings.STRIPE_WEBHOOK_SECRET:
            try:
                stripe.Webhook.construct_event(payload, sig_header or "", settings.STRIPE_WEBHOOK_SECRET)
            except stripe.SignatureVerificationError as e:
                logger.error(f"Invalid webhook signature: {e}")
                raise WebhookSignatureError("Invalid signature")
            except ValueError as e:
                raise InvalidPayloadError(f"Invalid payload: {e}")
        elif settings.ENVIRONMENT != "development":
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set", code="missing_webhook_secret")
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set, accepting unsigned webhook (development only)")

    try:
        return BillingEvent.model_validate(json.loads(payload))
    except (ValueError, ValidationError) as e:
        raise InvalidPayloadError(f"Invalid payload: {e}")


def log_billing_event(db: Session, event: BillingEvent) -> StripeEvent:
    """Get or create the idempotency row for an event"""
    existing = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event.id).first()
    if existing:
        return existing

    stripe_event = StripeEvent(
        stripe_event_id=event.id,
        event_type=event.type,
        processed=False,
        payload=event.model_dump(mode="json"),
    )
    db.add(stripe_event)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event inserted first
        db.rollback()
        return db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event.id).one()
    db.refresh(stripe_event)
    return stripe_event


def record_failed_attempt(
    db: Session,
    event: BillingEvent,
    error: str,
    user: Optional[User] = None,
    error_code: Optional[str] = None,
) -> WebhookAttempt:
    """Queue a failed live delivery for the retry scheduler (once per event)"""
    attempt = db.query(WebhookAttempt).filter(WebhookAttempt.stripe_event_id == event.id).first()
    if attempt:
        return attempt

    obj = event.object
    attempt = WebhookAttempt(
        stripe_event_id=event.id,
        event_type=event.type,
        request_payload=event.model_dump(mode="json"),
        status="failed",
        attempt_number=1,
        max_retries=settings.WEBHOOK_MAX_ATTEMPTS,
        next_retry_at=utcnow() + compute_backoff(1),
        error_message=error[:2000],
        error_code=error_code,
        customer_email=_get_stripe_value(obj, "customer_email"),
        subscription_id=_subscription_id_for(obj, event.type),
        user_id=user.id if user else None,
    )
    db.add(attempt)
    db.commit()
    logger.warning(f"Queued webhook {event.id} ({event.type}) for retry at {attempt.next_retry_at.isoformat()}")
    return attempt


# ============================================================================
# EVENT HANDLERS
# ============================================================================

def _subscription_id_for(obj: Dict[str, Any], event_type: str) -> Optional[str]:
    if event_type.startswith("customer.subscription."):
        return _get_stripe_value(obj, "id")
    subscription = _get_stripe_value(obj, "subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


def resolve_user_for_customer(db: Session, customer_id: Optional[str]) -> Optional[User]:
    """Local user for a Stripe customer: by stored customer id, then by the customer's email"""
    if not customer_id:
        return None
    user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
    if user:
        return user

    customer = stripe_service.retrieve_customer(customer_id)
    email = _get_stripe_value(customer, "email")
    if not email:
        return None
    return db.query(User).filter(User.email == email).first()


def _reconcile_from_stripe(db: Session, user: User, customer_id: str) -> Any:
    # Pulled state is current as of now, so it is versioned with the read time
    return reconcile_customer_entitlement(
        db, user, customer_id,
        statuses=ACTIVE_OR_TRIALING_STATUSES,
        source_version=current_source_version(),
        update_usage=True,
        source="webhook",
    )


def handle_subscription_changed(db: Session, event: BillingEvent, user: User, customer_id: str) -> str:
    status = _get_stripe_value(event.object, "status")
    if status in DEAD_SUBSCRIPTION_STATUSES:
        logger.info(f"Subscription {event.object.get('id')} is {status}; reconciling remaining subscriptions")
    result = _reconcile_from_stripe(db, user, customer_id)
    return result.selected.tier if result.selected else "free"


def handle_invoice_payment_succeeded(db: Session, event: BillingEvent, user: User, customer_id: str) -> str:
    """Grant the paid tier and cancel lower-tier subscriptions left over from an upgrade"""
    result = _reconcile_from_stripe(db, user, customer_id)
    if not result.selected:
        return "free"

    granted = result.selected
    product_plans = load_product_plans(db)
    for subscription in stripe_service.list_subscriptions(customer_id, ("active",)):
        subscription_id = _get_stripe_value(subscription, "id")
        if subscription_id == granted.subscription_id:
            continue
        plan = product_plans.get(stripe_service.get_subscription_product_id(subscription))
        if plan and tier_priority(plan.tier) < granted.priority:
            logger.info(f"Canceling lower tier subscription {subscription_id} ({plan.tier}) after upgrade to {granted.tier}")
            stripe_service.cancel_subscription(subscription_id)
    return granted.tier


def handle_invoice_payment_failed(db: Session, event: BillingEvent, user: User, customer_id: str) -> str:
    mark_entitlement_status(db, user, "past_due", event.created)
    return "past_due"


def handle_charge_refunded(db: Session, event: BillingEvent, user: User, customer_id: str) -> str:
    amount = _get_stripe_value(event.object, "amount", 0)
    refunded = _get_stripe_value(event.object, "amount_refunded", 0)
    if amount and refunded >= amount:
        logger.info(f"Full refund for customer {customer_id}, clearing entitlement for user {user.id}")
        clear_entitlement(db, user, event.created)
        return "refunded"
    logger.info(f"Partial refund ({refunded}/{amount}) for customer {customer_id}, entitlement unchanged")
    return "partial_refund"


EVENT_HANDLERS = {
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_changed,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "charge.refunded": handle_charge_refunded,
}


def apply_billing_event(db: Session, event: BillingEvent) -> Dict[str, Any]:
    """Run the handler for an event. Does not commit.

    Raises:
        BillingAPIError: If Stripe cannot be read
    """
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.info(f"Ignoring unhandled event type {event.type}")
        return {"handled": False}

    customer_id = _get_stripe_value(event.object, "customer")
    user = resolve_user_for_customer(db, customer_id)
    if user is None:
        logger.warning(f"No local user for customer {customer_id} on event {event.id}")
        return {"handled": False, "reason": "unknown_customer"}

    outcome = handler(db, event, user, customer_id)
    logger.info(f"Processed {event.type} ({event.id}) for user {user.id}: {outcome}")
    return {"handled": True, "user_id": user.id, "outcome": outcome}


def process_billing_webhook(
    db: Session,
    payload: bytes,
    sig_header: Optional[str],
    is_retry: bool = False,
) -> Dict[str, Any]:
    """Process one webhook delivery exactly once per stripe_event_id.

    A live delivery that fails is queued in webhook_attempts and acknowledged
    with status 'error_logged'; a retry delivery that fails raises so the retry
    scheduler records the failure.

    Returns:
        {"status": "success" | "already_processed" | "error_logged", ...}

    Raises:
        ConfigurationError, WebhookSignatureError, InvalidPayloadError: Before any write
        Exception: The handler failure, for retry deliveries only
    """
    stripe_service.require_live_stripe_key()
    event = parse_billing_event(payload, sig_header, is_retry=is_retry)
    logger.info(f"Received {event.type} ({event.id}){' [retry]' if is_retry else ''}")

    stripe_event = log_billing_event(db, event)
    if stripe_event.processed:
        logger.info(f"Event {event.id} already processed, skipping")
        webhook_events_counter.labels(event_type=event.type, outcome="duplicate").inc()
        return {"status": "already_processed", "event_id": event.id}

    try:
        result = apply_billing_event(db, event)
        stripe_event.processed = True
        stripe_event.processed_at = utcnow()
        stripe_event.error_message = None
        db.commit()
    except Exception as e:
        db.rollback()
        error = f"{type(e).__name__}: {e}"
        logger.error(f"Failed to process {event.type} ({event.id}): {error}", exc_info=True)
        webhook_events_counter.labels(event_type=event.type, outcome="error").inc()
        try:
            stripe_event.error_message = error[:2000]
            db.commit()
            if not is_retry:
                record_failed_attempt(db, event, error, error_code=getattr(e, "code", None) or type(e).__name__)
        except SQLAlchemyError as persist_error:
            db.rollback()
            raise PersistenceError(f"Failed to record webhook failure: {persist_error}") from e
        if is_retry:
            raise
        return {"status": "error_logged", "event_id": event.id}

    webhook_events_counter.labels(event_type=event.type, outcome="success").inc()
    return {"status": "success", "event_id": event.id, **result}
