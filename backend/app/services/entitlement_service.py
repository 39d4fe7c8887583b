"""Entitlement reconciliation against Stripe

Every path that writes an entitlement (on-demand check, bulk sync, restore,
webhooks) goes through reconcile_customer_entitlement() or
clear_entitlement(), both guarded by the monotonic source_version.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings, DEAD_SUBSCRIPTION_STATUSES
from app.core.exceptions import BillingAPIError, PersistenceError
from app.core.metrics import reconciliation_runs_counter, stale_writes_rejected_counter
from app.db.inserts import insert_if_missing
from app.models.entitlement import Entitlement
from app.models.usage_limit import UsageLimit
from app.models.user import User
from app.services import stripe_service
from app.services.plan_service import (
    PLAN_NAMES, SelectedSubscription, load_product_plans, select_highest_tier, usage_limit_for_tier
)
from app.services.stripe_service import _get_stripe_value
from app.services.usage_service import ensure_usage_limits
from app.utils.dates import ensure_utc, utcnow

logger = logging.getLogger("billing")

ACTIVE_OR_TRIALING_STATUSES = ("active", "trialing")


@dataclass
class ReconcileResult:
    selected: Optional[SelectedSubscription]
    entitlement: Optional[Entitlement]
    applied: bool  # False when the write was rejected as stale
    period_end: Any = None

    @property
    def subscribed(self) -> bool:
        return self.selected is not None and self.applied


def current_source_version() -> int:
    """Version for writes derived from a fresh Stripe read"""
    return int(time.time())


def _commit(db: Session, context: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to persist {context}: {e}")
        raise PersistenceError(f"Failed to persist {context}: {e}") from e


def _lock_entitlement(db: Session, user_id: int) -> Optional[Entitlement]:
    return db.query(Entitlement).filter(Entitlement.user_id == user_id).with_for_update().first()


def _is_stale(entitlement: Optional[Entitlement], source_version: int) -> bool:
    if entitlement is None or (entitlement.source_version or 0) <= source_version:
        return False
    stale_writes_rejected_counter.inc()
    logger.warning(
        f"Rejecting stale entitlement write for user {entitlement.user_id}: "
        f"version {source_version} < stored {entitlement.source_version}"
    )
    return True


def upsert_entitlement(
    db: Session,
    user: User,
    selected: SelectedSubscription,
    customer_id: str,
    period_end,
    source_version: int,
    status: str = "active",
) -> Optional[Entitlement]:
    """Write the selected subscription into the user's entitlement row. Does not commit.

    Returns:
        The entitlement, or None if a newer version is already stored
    """
    entitlement = _lock_entitlement(db, user.id)
    if entitlement is None:
        # A concurrent writer may create the row first; keep theirs and lock it
        insert_if_missing(db, Entitlement, ["user_id"], user_id=user.id, plan_tier="free", status="canceled", source_version=0)
        entitlement = _lock_entitlement(db, user.id)
    if _is_stale(entitlement, source_version):
        return None

    entitlement.plan_tier = selected.tier
    entitlement.plan_name = selected.plan_name
    entitlement.status = status
    entitlement.product_id = selected.product_id
    entitlement.stripe_customer_id = customer_id
    entitlement.stripe_subscription_id = selected.subscription_id
    entitlement.current_period_end = period_end
    entitlement.source_version = source_version

    if user.stripe_customer_id != customer_id:
        user.stripe_customer_id = customer_id

    logger.info(
        f"Entitlement for user {user.id}: tier={selected.tier}, subscription={selected.subscription_id}, "
        f"period_end={period_end.isoformat() if period_end else None}"
    )
    return entitlement


def clear_entitlement(db: Session, user: User, source_version: int, status: str = "canceled") -> bool:
    """Reset the user's entitlement to free. Does not commit.

    The row is kept so its source_version keeps guarding later writes, and
    current_period_end is kept for cleanup_expired_entitlements().

    Returns:
        False if a newer version is stored, True otherwise (including when there was nothing to clear)
    """
    entitlement = _lock_entitlement(db, user.id)
    if entitlement is None:
        return True
    if _is_stale(entitlement, source_version):
        return False

    if entitlement.plan_tier != "free" or entitlement.status != status:
        logger.info(f"Clearing entitlement for user {user.id} (was {entitlement.plan_tier}/{entitlement.status})")

    entitlement.plan_tier = "free"
    entitlement.plan_name = PLAN_NAMES["free"]
    entitlement.status = status
    entitlement.product_id = None
    entitlement.stripe_subscription_id = None
    entitlement.source_version = source_version
    return True


def mark_entitlement_status(db: Session, user: User, status: str, source_version: int) -> bool:
    """Change only the status (e.g. past_due after a failed invoice). Does not commit."""
    entitlement = _lock_entitlement(db, user.id)
    if entitlement is None or _is_stale(entitlement, source_version):
        return False
    entitlement.status = status
    entitlement.source_version = source_version
    logger.info(f"Entitlement for user {user.id} marked {status}")
    return True


def reconcile_customer_entitlement(
    db: Session,
    user: User,
    customer_id: str,
    *,
    statuses: Iterable[str] = ACTIVE_OR_TRIALING_STATUSES,
    source_version: Optional[int] = None,
    update_usage: bool = False,
    clear_when_missing: bool = True,
    source: str = "check",
) -> ReconcileResult:
    """Overwrite the user's entitlement from the customer's Stripe subscriptions. Does not commit.

    Args:
        db: Database session
        user: Local user owning the Stripe customer
        customer_id: Stripe customer ID
        statuses: Subscription statuses that grant access
        source_version: Version of the Stripe state being written (defaults to now)
        update_usage: Also initialize or refresh the usage-limit record
        clear_when_missing: Reset to free when no subscription qualifies
        source: Label for metrics and logs

    Raises:
        BillingAPIError: If Stripe cannot be read
    """
    if source_version is None:
        source_version = current_source_version()

    subscriptions = stripe_service.list_subscriptions(customer_id, statuses)
    selected = select_highest_tier(subscriptions, load_product_plans(db))

    if selected is None:
        logger.info(f"No qualifying subscription for user {user.id} (customer {customer_id}, statuses {list(statuses)})")
        if clear_when_missing:
            clear_entitlement(db, user, source_version)
        reconciliation_runs_counter.labels(source=source, outcome="no_subscription").inc()
        return ReconcileResult(selected=None, entitlement=None, applied=True)

    if len(subscriptions) > 1:
        logger.info(
            f"User {user.id} has {len(subscriptions)} subscriptions; selected {selected.subscription_id} ({selected.tier})"
        )

    period_end = stripe_service.resolve_period_end(selected.subscription)
    entitlement = upsert_entitlement(db, user, selected, customer_id, period_end, source_version)
    if entitlement is None:
        reconciliation_runs_counter.labels(source=source, outcome="stale").inc()
        return ReconcileResult(selected=selected, entitlement=None, applied=False, period_end=period_end)

    if update_usage:
        ensure_usage_limits(db, user.id, selected.tier, period_end)

    reconciliation_runs_counter.labels(source=source, outcome="applied").inc()
    return ReconcileResult(selected=selected, entitlement=entitlement, applied=True, period_end=period_end)


# ============================================================================
# CALLER-FACING OPERATIONS
# ============================================================================

def check_subscription(db: Session, user: User) -> Dict[str, Any]:
    """On-demand entitlement check for the authenticated user.

    Active and trialing subscriptions both count. Absence of a customer or subscription is reported as subscribed=False,
    never as an error. Stripe and persistence failures propagate; the caller
    retries.

    Raises:
        ConfigurationError: If the Stripe key is missing or test-mode
        BillingAPIError: If Stripe cannot be read
        PersistenceError: If the entitlement cannot be written
    """
    stripe_service.require_live_stripe_key()
    version = current_source_version()

    customer = stripe_service.find_customer_by_email(user.email, user_id=user.id)
    if customer is None:
        logger.info(f"No Stripe customer for user {user.id}, not subscribed")
        clear_entitlement(db, user, version)
        _commit(db, f"entitlement for user {user.id}")
        reconciliation_runs_counter.labels(source="check", outcome="no_customer").inc()
        return {"subscribed": False, "product_id": None, "subscription_end": None, "plan_tier": "free"}

    result = reconcile_customer_entitlement(
        db, user, _get_stripe_value(customer, "id"), source_version=version, source="check"
    )
    _commit(db, f"entitlement for user {user.id}")

    if not result.selected:
        return {"subscribed": False, "product_id": None, "subscription_end": None, "plan_tier": "free"}

    period_end = ensure_utc(result.period_end)
    if period_end is not None and period_end < utcnow():
        logger.warning(f"Subscription {result.selected.subscription_id} period already ended at {period_end.isoformat()}")
        return {"subscribed": False, "product_id": None, "subscription_end": None, "plan_tier": "free"}

    return {
        "subscribed": True,
        "product_id": result.selected.product_id,
        "subscription_end": period_end,
        "plan_tier": result.selected.tier,
    }


def sync_user_entitlement(db: Session, user: User, source_version: Optional[int] = None) -> bool:
    """Reconcile one user during the bulk sync, including usage limits. Commits.

    Returns:
        True if the user holds a subscription after the sync, False if skipped

    Raises:
        BillingAPIError, PersistenceError: Counted per user by the bulk sync
    """
    customer = stripe_service.find_customer_by_email(user.email, user_id=user.id)
    if customer is None:
        clear_entitlement(db, user, source_version or current_source_version())
        _commit(db, f"entitlement for user {user.id}")
        return False

    result = reconcile_customer_entitlement(
        db, user, _get_stripe_value(customer, "id"),
        source_version=source_version,
        update_usage=True,
        source="sync",
    )
    _commit(db, f"entitlement and usage for user {user.id}")
    return result.subscribed


def restore_user_subscription(db: Session, user_id: int, user_email: str) -> Dict[str, Any]:
    """Rebuild a user's entitlement and usage limits from Stripe after local state loss.

    Active and trialing subscriptions both count; trials use trial_end as the
    period end. Existing usage is preserved. Nothing is cleared when no
    subscription is found.

    Raises:
        ValueError: If the user does not exist
        ConfigurationError, BillingAPIError, PersistenceError
    """
    stripe_service.require_live_stripe_key()

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise ValueError("User not found")

    customer = stripe_service.find_customer_by_email(user_email, user_id=user.id)
    if customer is None:
        logger.info(f"Restore for user {user_id}: no Stripe customer for {user_email}")
        return {"restored": False, "message": "No Stripe customer found"}

    result = reconcile_customer_entitlement(
        db, user, _get_stripe_value(customer, "id"),
        statuses=ACTIVE_OR_TRIALING_STATUSES,
        update_usage=True,
        clear_when_missing=False,
        source="restore",
    )
    _commit(db, f"restored entitlement for user {user_id}")

    if not result.selected:
        return {"restored": False, "message": "No active subscription found"}
    if not result.applied:
        return {"restored": False, "message": "A newer entitlement is already stored"}

    logger.info(f"Restored {result.selected.tier} entitlement for user {user_id}")
    return {
        "restored": True,
        "plan": result.selected.tier,
        "plan_name": result.selected.plan_name,
        "image_limit": usage_limit_for_tier(result.selected.tier),
        "period_end": ensure_utc(result.period_end),
    }


def sync_stripe_status(db: Session, user: User) -> Dict[str, Any]:
    """Verify the stored subscription still exists and is alive in Stripe.

    A dead status or a subscription Stripe no longer knows about clears the
    entitlement and deletes the usage-limit record.
    """
    stripe_service.require_live_stripe_key()

    entitlement = db.query(Entitlement).filter(Entitlement.user_id == user.id).first()
    if not entitlement or not entitlement.stripe_subscription_id:
        return {"status": "no_subscription", "stripe_status": None}

    version = current_source_version()
    try:
        subscription = stripe_service.retrieve_subscription(entitlement.stripe_subscription_id)
        stripe_status = _get_stripe_value(subscription, "status")
    except BillingAPIError as e:
        if e.code != "resource_missing":
            raise
        stripe_status = "resource_missing"

    if stripe_status not in DEAD_SUBSCRIPTION_STATUSES and stripe_status != "resource_missing":
        return {"status": "unchanged", "stripe_status": stripe_status}

    logger.info(f"Subscription {entitlement.stripe_subscription_id} for user {user.id} is {stripe_status}, clearing")
    if clear_entitlement(db, user, version):
        db.query(UsageLimit).filter(UsageLimit.user_id == user.id).delete(synchronize_session=False)
    _commit(db, f"cleared entitlement for user {user.id}")
    return {"status": "cleared", "stripe_status": stripe_status}


def cleanup_expired_entitlements(db: Session) -> int:
    """Delete dead entitlements that ended well in the past.

    Rows qualify when their status no longer grants access, they were last
    touched more than DEAD_ENTITLEMENT_MIN_AGE_HOURS ago and their period
    ended more than EXPIRED_ENTITLEMENT_GRACE_DAYS ago.
    """
    now = utcnow()
    updated_before = now - timedelta(hours=settings.DEAD_ENTITLEMENT_MIN_AGE_HOURS)
    ended_before = now - timedelta(days=settings.EXPIRED_ENTITLEMENT_GRACE_DAYS)

    try:
        deleted = db.query(Entitlement).filter(
            Entitlement.status.in_(DEAD_SUBSCRIPTION_STATUSES),
            Entitlement.updated_at < updated_before,
            Entitlement.current_period_end < ended_before
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to clean up entitlements: {e}") from e

    if deleted:
        logger.info(f"Deleted {deleted} expired entitlement(s)")
    return deleted
