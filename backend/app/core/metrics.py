"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY
from sqlalchemy import func
from sqlalchemy.orm import Session


def _get_or_create(metric_cls, name, documentation, labelnames=()):
    # Modules can be re-imported under test; reuse the registered collector
    try:
        return metric_cls(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Reconciliation metrics
reconciliation_runs_counter = _get_or_create(
    Counter,
    'entitlements_reconciliation_runs_total',
    'Total number of entitlement reconciliations',
    ['source', 'outcome']
)

stale_writes_rejected_counter = _get_or_create(
    Counter,
    'entitlements_stale_writes_rejected_total',
    'Entitlement writes rejected because a newer source version is stored'
)

sync_users_counter = _get_or_create(
    Counter,
    'entitlements_sync_users_total',
    'Users processed by the bulk subscription sync',
    ['outcome']
)

# Webhook metrics
webhook_events_counter = _get_or_create(
    Counter,
    'entitlements_webhook_events_total',
    'Billing webhook events received by the intake handler',
    ['event_type', 'outcome']
)

webhook_retries_counter = _get_or_create(
    Counter,
    'entitlements_webhook_retries_total',
    'Webhook retry deliveries',
    ['outcome']
)

webhook_attempts_gauge = _get_or_create(
    Gauge,
    'entitlements_webhook_attempts',
    'Webhook attempt records by status (exhausted = failed with no further retries)',
    ['status']
)

# Usage metrics
usage_increments_counter = _get_or_create(
    Counter,
    'entitlements_usage_increments_total',
    'Image generation usage increments',
    ['outcome']
)

active_entitlements_gauge = _get_or_create(
    Gauge,
    'entitlements_active',
    'Number of active entitlements by plan tier',
    ['plan_tier']
)

# Scheduler metrics
scheduler_runs_counter = _get_or_create(
    Counter,
    'entitlements_scheduler_runs_total',
    'Total number of background job runs',
    ['job', 'status']
)


def update_webhook_attempt_gauges(db: Session):
    """Refresh webhook attempt gauges from the database"""
    from app.models.webhook_attempt import WebhookAttempt

    counts = dict(
        db.query(WebhookAttempt.status, func.count(WebhookAttempt.id))
        .group_by(WebhookAttempt.status)
        .all()
    )
    for status in ("failed", "retrying", "success"):
        webhook_attempts_gauge.labels(status=status).set(counts.get(status, 0))

    exhausted = db.query(func.count(WebhookAttempt.id)).filter(
        WebhookAttempt.status == "failed",
        WebhookAttempt.next_retry_at.is_(None)
    ).scalar()
    webhook_attempts_gauge.labels(status="exhausted").set(exhausted or 0)


def update_active_entitlements_gauge(db: Session):
    """Refresh the active entitlements gauge from the database"""
    from app.core.config import TIER_PRIORITY
    from app.models.entitlement import Entitlement

    counts = dict(
        db.query(Entitlement.plan_tier, func.count(Entitlement.id))
        .filter(Entitlement.status == "active")
        .group_by(Entitlement.plan_tier)
        .all()
    )
    for tier in TIER_PRIORITY:
        active_entitlements_gauge.labels(plan_tier=tier).set(counts.get(tier, 0))
