"""WebhookAttempt model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index
from datetime import datetime, timezone
from app.models.base import Base


class WebhookAttempt(Base):
    """Billing webhook event that failed processing, with its retry history"""
    __tablename__ = "webhook_attempts"

    id = Column(Integer, primary_key=True, index=True)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    request_payload = Column(JSON, nullable=False)  # Original Stripe event, re-posted on retry
    response_payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="failed")  # 'failed', 'retrying', 'success'
    attempt_number = Column(Integer, nullable=False, default=1)
    max_retries = Column(Integer, nullable=False, default=5)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)  # NULL once retries are exhausted
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)
    customer_email = Column(String(255), nullable=True)
    subscription_id = Column(String(255), nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index("ix_webhook_attempts_status_next_retry_at", "status", "next_retry_at"),
    )

    def __repr__(self):
        return f"<WebhookAttempt(event={self.stripe_event_id}, status={self.status}, attempt={self.attempt_number})>"
