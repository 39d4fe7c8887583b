"""Pydantic schemas for billing webhook intake and retries"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class BillingEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any]


class BillingEvent(BaseModel):
    """A Stripe event as delivered to /webhook-intake"""
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    created: int
    data: BillingEventData
    livemode: bool = False

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.object


class RetryResult(BaseModel):
    attempt_id: int
    stripe_event_id: str
    status: str  # 'success', 'failed', 'skipped'
    attempt_number: int
    next_retry_at: Optional[datetime] = None
    error: Optional[str] = None


class RetryPassResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    retried_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    results: List[RetryResult] = []

    def to_public(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "retriedCount": self.retried_count,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "results": [r.model_dump(mode="json") for r in self.results],
        }


class WebhookAttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stripe_event_id: str
    event_type: str
    status: str
    attempt_number: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime
