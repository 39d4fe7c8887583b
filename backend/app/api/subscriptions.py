"""Subscription reconciliation API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.exceptions import ConfigurationError, EntitlementError
from app.core.security import (
    get_current_user, is_internal_caller, require_admin, require_auth, require_internal_key
)
from app.db.session import get_db
from app.models.user import User
from app.schemas.subscriptions import (
    EntitlementCheckResponse, RestoreRequest, RestoreResponse, StatusSyncResponse, SyncResponse
)
from app.services.entitlement_service import (
    check_subscription, restore_user_subscription, sync_stripe_status
)
from app.services.sync_service import run_locked_sync

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)


def require_restore_caller(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    """Dependency: internal API key, or an admin session"""
    if is_internal_caller(request.headers.get("Authorization")):
        return None
    user = get_current_user(require_auth(request), db)
    return require_admin(user)


@router.api_route("/check", methods=["GET", "POST"], response_model=EntitlementCheckResponse)
def check_subscription_route(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Reconcile and return the caller's entitlement.

    Failures still answer with subscribed=false so the client can fall back
    to the free experience; the status code tells it to retry.
    """
    try:
        return check_subscription(db, user)
    except EntitlementError as e:
        logger.error(f"Subscription check failed for user {user.id}: {e}")
        body = EntitlementCheckResponse(subscribed=False, error=e.message)
        return JSONResponse(status_code=e.status_code, content=body.model_dump(mode="json"))


@router.post("/sync", response_model=SyncResponse, dependencies=[Depends(require_internal_key)])
def sync_subscriptions_route(db: Session = Depends(get_db)):
    """Reconcile every user with Stripe (cron)"""
    try:
        return run_locked_sync(db)
    except EntitlementError as e:
        logger.error(f"Subscription sync aborted: {e}")
        raise HTTPException(e.status_code, e.message)


@router.post("/restore", response_model=RestoreResponse)
def restore_subscription_route(
    request_data: RestoreRequest,
    caller: Optional[User] = Depends(require_restore_caller),
    db: Session = Depends(get_db)
):
    """Rebuild a user's entitlement and usage limits from Stripe"""
    try:
        result = restore_user_subscription(db, request_data.user_id, request_data.user_email)
    except ValueError as e:
        raise HTTPException(404, str(e))
    except EntitlementError as e:
        logger.error(f"Restore failed for user {request_data.user_id}: {e}")
        raise HTTPException(e.status_code, e.message)

    if caller is not None:
        logger.info(f"Admin {caller.id} restored subscription for user {request_data.user_id}: {result.get('restored')}")
    return result


@router.post("/status-sync", response_model=StatusSyncResponse)
def status_sync_route(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Drop the caller's entitlement if Stripe reports the subscription dead or missing"""
    try:
        return sync_stripe_status(db, user)
    except ConfigurationError as e:
        raise HTTPException(500, e.message)
    except EntitlementError as e:
        logger.error(f"Stripe status sync failed for user {user.id}: {e}")
        raise HTTPException(e.status_code, e.message)
