"""Webhook retry scheduler: failed -> retrying -> success | failed(attempt + 1)"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import httpx
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ConfigurationError
from app.core.metrics import webhook_retries_counter
from app.models.webhook_attempt import WebhookAttempt
from app.schemas.webhooks import RetryPassResponse, RetryResult
from app.services.email_service import send_webhook_exhausted_alert
from app.services.webhook_service import compute_backoff
from app.utils.dates import utcnow

logger = logging.getLogger("webhooks")


def _require_retry_credentials():
    """Retry deliveries authenticate to the intake with INTERNAL_API_KEY.

    Raises:
        ConfigurationError: If INTERNAL_API_KEY is not set (nothing is written)
    """
    if not settings.INTERNAL_API_KEY:
        raise ConfigurationError("INTERNAL_API_KEY is not set", code="missing_internal_key")


def _stale_claim(now: datetime):
    """Claimed by a pass that stopped before recording an outcome"""
    lease_expired_before = now - timedelta(seconds=settings.WEBHOOK_CLAIM_LEASE_SECONDS)
    return and_(
        WebhookAttempt.status == "retrying",
        WebhookAttempt.last_retry_at < lease_expired_before,
    )


def get_eligible_attempts(db: Session, now: datetime, limit: Optional[int] = None) -> List[WebhookAttempt]:
    """Due failed attempts and abandoned claims that still have retries left, oldest due first"""
    due = and_(
        WebhookAttempt.status == "failed",
        WebhookAttempt.next_retry_at.isnot(None),
        WebhookAttempt.next_retry_at <= now,
    )
    return db.query(WebhookAttempt).filter(
        or_(due, _stale_claim(now)),
        WebhookAttempt.attempt_number < settings.WEBHOOK_MAX_ATTEMPTS
    ).order_by(WebhookAttempt.next_retry_at.asc()).limit(limit or settings.WEBHOOK_RETRY_BATCH_SIZE).all()


def claim_attempt(db: Session, attempt_id: int, now: datetime) -> bool:
    """Move one attempt to retrying.

    The conditional UPDATE only matches a row still in 'failed', or one
    whose 'retrying' lease expired, and stamps last_retry_at; of two
    overlapping passes exactly one wins the claim.
    """
    rows = db.query(WebhookAttempt).filter(
        WebhookAttempt.id == attempt_id,
        or_(WebhookAttempt.status == "failed", _stale_claim(now))
    ).update({
        WebhookAttempt.status: "retrying",
        WebhookAttempt.last_retry_at: now,
    }, synchronize_session=False)
    db.commit()
    return rows == 1


def deliver_attempt(attempt: WebhookAttempt, client: httpx.Client) -> Tuple[bool, Optional[dict], Optional[str], Optional[str]]:
    """Re-post the original event to the intake handler.

    Timeouts and network errors count as failures like any non-2xx answer.

    Returns:
        (succeeded, response_body, error_message, error_code)
    """
    headers = {
        "X-Retry-Attempt": "true",
        "X-Original-Event-Id": attempt.stripe_event_id,
        "Authorization": f"Bearer {settings.INTERNAL_API_KEY}",
    }

    try:
        response = client.post(settings.webhook_intake_url, json=attempt.request_payload, headers=headers)
    except httpx.HTTPError as e:
        return False, None, f"Exception: {type(e).__name__}: {e}", type(e).__name__

    try:
        body = response.json()
    except ValueError:
        body = {"raw": response.text[:1000]}

    if response.is_success:
        return True, body, None, None
    return False, body, f"Retry failed: {response.status_code} {response.text[:500]}", f"http_{response.status_code}"


def _record_success(db: Session, attempt: WebhookAttempt, body: Optional[dict]):
    attempt.status = "success"
    attempt.attempt_number = attempt.attempt_number + 1
    attempt.next_retry_at = None
    attempt.response_payload = body
    attempt.error_message = None
    attempt.error_code = None
    db.commit()
    webhook_retries_counter.labels(outcome="success").inc()
    logger.info(f"Webhook {attempt.stripe_event_id} succeeded on attempt {attempt.attempt_number}")


def _record_failure(
    db: Session,
    attempt: WebhookAttempt,
    error: str,
    now: datetime,
    body: Optional[dict] = None,
    error_code: Optional[str] = None,
):
    """Bump attempt_number and schedule the next retry, or give up at the maximum"""
    attempt.status = "failed"
    attempt.attempt_number = attempt.attempt_number + 1
    attempt.error_message = error[:2000]
    attempt.error_code = error_code
    attempt.response_payload = body
    exhausted = attempt.attempt_number >= attempt.max_retries or attempt.attempt_number >= settings.WEBHOOK_MAX_ATTEMPTS
    attempt.next_retry_at = None if exhausted else now + compute_backoff(attempt.attempt_number)
    db.commit()

    if exhausted:
        webhook_retries_counter.labels(outcome="exhausted").inc()
        logger.error(
            f"Webhook {attempt.stripe_event_id} failed {attempt.attempt_number} times, "
            f"giving up until manually replayed: {error}"
        )
        send_webhook_exhausted_alert(attempt)
    else:
        webhook_retries_counter.labels(outcome="failed").inc()
        logger.warning(
            f"Webhook {attempt.stripe_event_id} retry failed (attempt {attempt.attempt_number}), "
            f"next retry at {attempt.next_retry_at.isoformat()}: {error}"
        )


def _result(attempt: WebhookAttempt, error: Optional[str] = None) -> RetryResult:
    return RetryResult(
        attempt_id=attempt.id,
        stripe_event_id=attempt.stripe_event_id,
        status=attempt.status,
        attempt_number=attempt.attempt_number,
        next_retry_at=attempt.next_retry_at,
        error=error,
    )


def retry_attempt(db: Session, attempt: WebhookAttempt, client: httpx.Client, now: datetime) -> RetryResult:
    """Deliver one claimed attempt and record the outcome. Never raises.

    If even the failure cannot be recorded the row stays 'retrying' and is
    reclaimed once its lease expires.
    """
    try:
        succeeded, body, error, error_code = deliver_attempt(attempt, client)
        if succeeded:
            _record_success(db, attempt, body)
        else:
            _record_failure(db, attempt, error, now, body, error_code)
        return _result(attempt, error)
    except Exception as e:
        db.rollback()
        error = f"Exception: {e}"
        logger.error(f"Error retrying webhook {attempt.stripe_event_id}: {e}", exc_info=True)
        try:
            db.refresh(attempt)
            _record_failure(db, attempt, error, now, error_code=type(e).__name__)
        except Exception as record_error:
            db.rollback()
            logger.error(f"Could not record retry failure for {attempt.stripe_event_id}: {record_error}")
        return _result(attempt, error)


def retry_failed_webhooks(db: Session, client: Optional[httpx.Client] = None, now: Optional[datetime] = None) -> RetryPassResponse:
    """Run one retry pass over at most WEBHOOK_RETRY_BATCH_SIZE due attempts.

    Attempts claimed by an overlapping pass are skipped. Per-attempt errors
    are recorded as failures and never abort the pass.

    Raises:
        ConfigurationError: If INTERNAL_API_KEY is not set (no attempt is touched)
    """
    _require_retry_credentials()
    now = now or utcnow()
    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=settings.WEBHOOK_RETRY_TIMEOUT_SECONDS)

    summary = RetryPassResponse()
    try:
        attempts = get_eligible_attempts(db, now)
        if attempts:
            logger.info(f"Retrying {len(attempts)} failed webhook(s)")

        for attempt in attempts:
            reclaiming = attempt.status == "retrying"
            if not claim_attempt(db, attempt.id, now):
                logger.info(f"Webhook attempt {attempt.id} claimed by another pass, skipping")
                continue
            if reclaiming:
                logger.warning(f"Reclaiming webhook {attempt.stripe_event_id}: previous retry never recorded an outcome")
            db.refresh(attempt)

            result = retry_attempt(db, attempt, client, now)
            summary.retried_count += 1
            if result.status == "success":
                summary.success_count += 1
            else:
                summary.failed_count += 1
            summary.results.append(result)
    finally:
        if owns_client:
            client.close()

    if summary.retried_count:
        logger.info(
            f"Webhook retry pass: {summary.retried_count} retried, "
            f"{summary.success_count} succeeded, {summary.failed_count} failed"
        )
    return summary


def replay_attempt(db: Session, attempt_id: int, client: Optional[httpx.Client] = None) -> RetryResult:
    """Operator-triggered single delivery of an attempt the scheduler gave up on.

    attempt_number still increases; a failed replay stays terminal.

    Raises:
        ConfigurationError: If INTERNAL_API_KEY is not set
        ValueError: If the attempt does not exist or is not eligible for replay
    """
    _require_retry_credentials()
    attempt = db.query(WebhookAttempt).filter(WebhookAttempt.id == attempt_id).first()
    if not attempt:
        raise ValueError("Webhook attempt not found")
    if attempt.status == "success":
        raise ValueError("Webhook attempt already succeeded")

    now = utcnow()
    if not claim_attempt(db, attempt.id, now):
        raise ValueError("Webhook attempt is being retried")
    db.refresh(attempt)

    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=settings.WEBHOOK_RETRY_TIMEOUT_SECONDS)
    try:
        succeeded, body, error, error_code = deliver_attempt(attempt, client)
    except Exception as e:
        succeeded, body, error, error_code = False, None, f"Exception: {e}", type(e).__name__
    finally:
        if owns_client:
            client.close()

    logger.info(f"Manual replay of webhook {attempt.stripe_event_id}: {'success' if succeeded else error}")
    if succeeded:
        _record_success(db, attempt, body)
    else:
        attempt.status = "failed"
        attempt.attempt_number = attempt.attempt_number + 1
        attempt.error_message = error[:2000]
        attempt.error_code = error_code
        attempt.response_payload = body
        attempt.next_retry_at = None
        db.commit()
    return _result(attempt, error)
