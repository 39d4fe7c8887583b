"""Usage service - image generation limits and the atomic usage counter"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import PersistenceError
from app.core.metrics import usage_increments_counter
from app.db.inserts import insert_if_missing
from app.models.entitlement import Entitlement
from app.models.usage_limit import UsageLimit
from app.schemas.usage import ImageGenerationResult, TextGenerationResult
from app.services.plan_service import usage_limit_for_tier
from app.utils.dates import ensure_utc, utcnow

logger = logging.getLogger("usage")


def _lock_usage(db: Session, user_id: int) -> Optional[UsageLimit]:
    return db.query(UsageLimit).filter(UsageLimit.user_id == user_id).with_for_update().first()


def ensure_usage_limits(db: Session, user_id: int, tier: str, period_end: Optional[datetime]) -> Optional[UsageLimit]:
    """Initialize or refresh the usage-limit record after a reconciliation.

    An existing record keeps its used_count; only limit_count and period_end
    are overwritten. A new record starts at used_count = 0 and is only created
    for tiers with a positive limit. Does not commit.
    """
    limit = usage_limit_for_tier(tier)
    usage = _lock_usage(db, user_id)

    if usage is None:
        if limit <= 0:
            return None
        if period_end is None:
            logger.warning(f"Not creating usage limits for user {user_id}: no period end known")
            return None
        insert_if_missing(
            db, UsageLimit, ["user_id"],
            user_id=user_id, used_count=0, limit_count=limit, period_start=utcnow(), period_end=period_end,
        )
        usage = _lock_usage(db, user_id)

    usage.limit_count = limit
    if period_end is not None:
        usage.period_end = period_end
    logger.info(f"Usage limits for user {user_id}: limit={limit}, used={usage.used_count}")
    return usage


def _active_paid_entitlement(db: Session, user_id: int, now: datetime) -> Optional[Entitlement]:
    entitlement = db.query(Entitlement).filter(Entitlement.user_id == user_id).first()
    if not entitlement or not entitlement.is_paid:
        return None
    period_end = ensure_utc(entitlement.current_period_end)
    if period_end is not None and period_end <= now:
        return None
    return entitlement


def _roll_period_forward(db: Session, usage: UsageLimit, entitlement: Entitlement, now: datetime) -> bool:
    """Start a new usage window when the stored one ended but the entitlement continues.

    The conditional UPDATE on the old period_end makes concurrent rollovers reset only once.
    """
    old_end = ensure_utc(usage.period_end)
    new_end = ensure_utc(entitlement.current_period_end)
    if old_end > now or new_end is None or new_end <= now:
        return False

    rows = db.query(UsageLimit).filter(
        UsageLimit.id == usage.id,
        UsageLimit.period_end == usage.period_end
    ).update({
        UsageLimit.used_count: 0,
        UsageLimit.limit_count: usage_limit_for_tier(entitlement.plan_tier),
        UsageLimit.period_start: old_end,
        UsageLimit.period_end: new_end,
    }, synchronize_session=False)
    db.commit()
    db.refresh(usage)
    if rows:
        logger.info(f"Rolled usage window for user {usage.user_id} to {new_end.isoformat()}")
    return rows == 1


def get_image_limit(db: Session, user_id: int) -> Dict[str, Any]:
    """Whether the user may generate an image now, and how many remain."""
    now = utcnow()
    entitlement = _active_paid_entitlement(db, user_id, now)
    if not entitlement:
        return {"can_generate": False, "remaining": 0, "limit": 0, "reset_date": None}

    usage = db.query(UsageLimit).filter(UsageLimit.user_id == user_id).first()
    if not usage:
        return {"can_generate": False, "remaining": 0, "limit": 0, "reset_date": None}

    try:
        _roll_period_forward(db, usage, entitlement, now)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to roll usage period: {e}") from e

    period_open = ensure_utc(usage.period_end) > now
    return {
        "can_generate": period_open and usage.used_count < usage.limit_count,
        "remaining": usage.remaining if period_open else 0,
        "limit": usage.limit_count,
        "reset_date": ensure_utc(usage.period_end),
    }


def consume_generation(db: Session, user_id: int) -> bool:
    """Atomically count one image generation against the user's limit.

    The increment happens in a single UPDATE guarded by used_count < limit_count,
    so concurrent requests can never overshoot the limit or lose an increment.

    Returns:
        True if a unit was consumed, False if the user has no paid entitlement,
        no usage record, or no remaining allowance

    Raises:
        PersistenceError: If the update fails
    """
    now = utcnow()
    entitlement = _active_paid_entitlement(db, user_id, now)
    if not entitlement:
        usage_increments_counter.labels(outcome="not_subscribed").inc()
        return False

    try:
        usage = db.query(UsageLimit).filter(UsageLimit.user_id == user_id).first()
        if usage:
            _roll_period_forward(db, usage, entitlement, now)

        rows = db.query(UsageLimit).filter(
            UsageLimit.user_id == user_id,
            UsageLimit.used_count < UsageLimit.limit_count,
            UsageLimit.period_end > now
        ).update({UsageLimit.used_count: UsageLimit.used_count + 1}, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        usage_increments_counter.labels(outcome="error").inc()
        raise PersistenceError(f"Failed to increment usage for user {user_id}: {e}") from e

    if rows == 1:
        usage_increments_counter.labels(outcome="consumed").inc()
        return True

    usage_increments_counter.labels(outcome="limit_reached").inc()
    logger.info(f"Usage limit reached for user {user_id}")
    return False


def record_generation_result(db: Session, result: Union[ImageGenerationResult, TextGenerationResult]) -> Dict[str, Any]:
    """Apply a generation callback: images count against the limit, text does not."""
    if result.kind == "text":
        return {"status": "ignored", "counted": False}

    counted = consume_generation(db, result.user_id)
    return {"status": "counted" if counted else "limit_reached", "counted": counted}


def cleanup_expired_usage_limits(db: Session) -> int:
    """Delete ended usage windows for users who no longer hold an active entitlement."""
    now = utcnow()
    active_users = select(Entitlement.user_id).where(
        Entitlement.status == "active",
        Entitlement.plan_tier != "free"
    )
    try:
        deleted = db.query(UsageLimit).filter(
            UsageLimit.period_end < now,
            ~UsageLimit.user_id.in_(active_users)
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to clean up usage limits: {e}") from e

    if deleted:
        logger.info(f"Deleted {deleted} expired usage limit record(s)")
    return deleted
