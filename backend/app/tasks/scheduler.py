"""Background scheduler tasks: webhook retries, subscription sync and cleanup"""
import asyncio
import logging
from typing import Callable

from app.core.config import settings
from app.core.metrics import scheduler_runs_counter
from app.db.session import SessionLocal
from app.services.entitlement_service import cleanup_expired_entitlements
from app.services.sync_service import SyncAlreadyRunning, run_locked_sync
from app.services.usage_service import cleanup_expired_usage_limits
from app.services.webhook_retry_service import retry_failed_webhooks

logger = logging.getLogger("scheduler")


def run_webhook_retry_job():
    db = SessionLocal()
    try:
        summary = retry_failed_webhooks(db)
        return summary.retried_count
    finally:
        db.close()


def run_subscription_sync_job():
    db = SessionLocal()
    try:
        return run_locked_sync(db)
    except SyncAlreadyRunning:
        logger.info("Subscription sync already running elsewhere, skipping this run")
        return None
    finally:
        db.close()


def run_cleanup_job():
    db = SessionLocal()
    try:
        entitlements = cleanup_expired_entitlements(db)
        usage = cleanup_expired_usage_limits(db)
        return {"entitlements": entitlements, "usage_limits": usage}
    finally:
        db.close()


async def _periodic(job_name: str, job: Callable, interval_seconds: int, initial_delay: int = 0):
    """Run a blocking job in a worker thread every interval, forever.

    Jobs run off the event loop: the retry job posts back to this server.
    """
    logger.info(f"Starting {job_name} task (every {interval_seconds}s)")
    if initial_delay:
        await asyncio.sleep(initial_delay)

    while True:
        try:
            result = await asyncio.to_thread(job)
            scheduler_runs_counter.labels(job=job_name, status="success").inc()
            logger.debug(f"{job_name} finished: {result}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            scheduler_runs_counter.labels(job=job_name, status="error").inc()
            logger.error(f"Error in {job_name} task: {e}", exc_info=True)

        await asyncio.sleep(interval_seconds)


async def webhook_retry_task():
    await _periodic("webhook_retry", run_webhook_retry_job, settings.WEBHOOK_RETRY_INTERVAL_SECONDS, initial_delay=30)


async def subscription_sync_task():
    await _periodic("subscription_sync", run_subscription_sync_job, settings.SUBSCRIPTION_SYNC_INTERVAL_SECONDS, initial_delay=60)


async def cleanup_task():
    await _periodic("cleanup", run_cleanup_job, settings.CLEANUP_INTERVAL_SECONDS, initial_delay=120)


def start_background_tasks() -> list:
    """Start all scheduler loops; returns the tasks so shutdown can cancel them"""
    return [
        asyncio.create_task(webhook_retry_task()),
        asyncio.create_task(subscription_sync_task()),
        asyncio.create_task(cleanup_task()),
    ]
