"""Billing webhook intake, retry pass and attempt administration routes"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.exceptions import EntitlementError
from app.core.security import is_internal_caller, require_admin, require_internal_key
from app.db.session import get_db
from app.models.user import User
from app.models.webhook_attempt import WebhookAttempt
from app.schemas.webhooks import RetryResult, WebhookAttemptOut
from app.services.webhook_retry_service import replay_attempt, retry_failed_webhooks
from app.services.webhook_service import process_billing_webhook

intake_router = APIRouter(tags=["webhooks"])
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/api/admin/webhook-attempts", tags=["admin"])
logger = logging.getLogger(__name__)


@intake_router.post("/webhook-intake")
async def webhook_intake(request: Request, db: Session = Depends(get_db)):
    """Receive a Stripe event from Stripe or from the retry scheduler

    The body is read as raw bytes so the Stripe signature can be verified.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    is_retry = request.headers.get("X-Retry-Attempt", "").lower() == "true"

    if is_retry:
        if not is_internal_caller(request.headers.get("Authorization")):
            raise HTTPException(401, "Retry deliveries require the internal API key")
        logger.info(f"Retry delivery for event {request.headers.get('X-Original-Event-Id')}")
    elif not sig_header:
        logger.warning("Webhook delivery without stripe-signature header")

    try:
        return process_billing_webhook(db, payload, sig_header, is_retry=is_retry)
    except EntitlementError as e:
        logger.error(f"Webhook rejected: {e}")
        raise HTTPException(e.status_code, e.message)
    except Exception as e:
        # Only retry deliveries get here; the scheduler records the failure
        logger.error(f"Retry delivery failed: {e}")
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})


@router.post("/retry", dependencies=[Depends(require_internal_key)])
def retry_failed_webhooks_route(db: Session = Depends(get_db)):
    """Run one retry pass over due failed webhook attempts (cron)"""
    return retry_failed_webhooks(db).to_public()


@admin_router.get("", response_model=List[WebhookAttemptOut])
def list_webhook_attempts(
    status: Optional[str] = Query(None, description="failed, retrying or success"),
    exhausted: bool = Query(False, description="Only attempts that gave up"),
    limit: int = Query(100, ge=1, le=500),
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """List webhook attempts (admin only)"""
    query = db.query(WebhookAttempt)
    if status:
        query = query.filter(WebhookAttempt.status == status)
    if exhausted:
        query = query.filter(WebhookAttempt.status == "failed", WebhookAttempt.next_retry_at.is_(None))
    return query.order_by(WebhookAttempt.created_at.desc()).limit(limit).all()


@admin_router.post("/{attempt_id}/replay", response_model=RetryResult)
def replay_webhook_attempt(
    attempt_id: int,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Deliver one webhook attempt again (admin only)"""
    try:
        result = replay_attempt(db, attempt_id)
    except EntitlementError as e:
        logger.error(f"Replay of webhook attempt {attempt_id} refused: {e}")
        raise HTTPException(e.status_code, e.message)
    except ValueError as e:
        error_msg = str(e)
        if "not found" in error_msg.lower():
            raise HTTPException(404, error_msg)
        raise HTTPException(409, error_msg)
    logger.info(f"Admin {admin_user.id} replayed webhook attempt {attempt_id}: {result.status}")
    return result
