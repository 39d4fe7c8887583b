"""Bulk subscription sync - reconcile every user with an email against Stripe"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import EntitlementError
from app.core.metrics import sync_users_counter
from app.db.redis import SYNC_LOCK_KEY, acquire_lock, release_lock
from app.models.user import User
from app.services import stripe_service
from app.services.entitlement_service import current_source_version, sync_user_entitlement

logger = logging.getLogger("billing")


class SyncAlreadyRunning(EntitlementError):
    status_code = 409


def _sync_one(db: Session, user_id: int, source_version: int) -> str:
    """Sync a single user and classify the outcome; never raises."""
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            return "skipped"
        if sync_user_entitlement(db, user, source_version):
            return "synced"
        return "skipped"
    except Exception as e:
        db.rollback()
        logger.error(f"Sync failed for user {user_id}: {e}", exc_info=not isinstance(e, EntitlementError))
        return "error"


def sync_all_subscriptions(
    db: Session,
    max_workers: Optional[int] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Dict[str, Any]:
    """Reconcile entitlements and usage limits for every user with an email.

    One user's failure is logged and counted without stopping the batch.
    With more than one worker, users are fanned out over a bounded thread
    pool; each worker uses its own session so per-user writes stay atomic.

    Raises:
        ConfigurationError: If the Stripe key is missing or test-mode (nothing is written)
    """
    stripe_service.require_live_stripe_key()

    workers = max_workers or settings.SYNC_MAX_WORKERS
    source_version = current_source_version()
    user_ids = [
        row.id for row in
        db.query(User.id).filter(User.email.isnot(None), User.email != "").order_by(User.id).all()
    ]
    logger.info(f"Starting subscription sync for {len(user_ids)} user(s) with {workers} worker(s)")

    counts = {"synced": 0, "skipped": 0, "error": 0}

    if workers <= 1 or len(user_ids) <= 1:
        for user_id in user_ids:
            counts[_sync_one(db, user_id, source_version)] += 1
    else:
        if session_factory is None:
            from app.db.session import SessionLocal
            session_factory = SessionLocal

        def worker(user_id: int) -> str:
            worker_db = session_factory()
            try:
                return _sync_one(worker_db, user_id, source_version)
            finally:
                worker_db.close()

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="subscription-sync") as executor:
            futures = [executor.submit(worker, user_id) for user_id in user_ids]
            for future in as_completed(futures):
                counts[future.result()] += 1

    for outcome, count in counts.items():
        if count:
            sync_users_counter.labels(outcome=outcome).inc(count)

    message = f"Synced {counts['synced']} subscription(s), skipped {counts['skipped']}, {counts['error']} error(s)"
    logger.info(message)
    return {
        "success": True,
        "synced": counts["synced"],
        "errors": counts["error"],
        "skipped": counts["skipped"],
        "message": message,
    }


def run_locked_sync(db: Session, **kwargs) -> Dict[str, Any]:
    """Run the bulk sync unless another instance holds the Redis lock.

    Raises:
        SyncAlreadyRunning: If an overlapping run holds the lock
    """
    if not acquire_lock(SYNC_LOCK_KEY, timeout=settings.SYNC_LOCK_TIMEOUT):
        raise SyncAlreadyRunning("Subscription sync already in progress")
    try:
        return sync_all_subscriptions(db, **kwargs)
    finally:
        release_lock(SYNC_LOCK_KEY)
