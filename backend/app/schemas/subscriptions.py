"""Pydantic schemas for subscription reconciliation endpoints"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class EntitlementCheckResponse(BaseModel):
    subscribed: bool
    product_id: Optional[str] = None
    subscription_end: Optional[datetime] = None
    plan_tier: str = "free"
    error: Optional[str] = None


class RestoreRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    user_email: EmailStr = Field(alias="userEmail")


class RestoreResponse(BaseModel):
    restored: bool
    plan: Optional[str] = None
    plan_name: Optional[str] = None
    image_limit: Optional[int] = None
    period_end: Optional[datetime] = None
    message: Optional[str] = None


class SyncResponse(BaseModel):
    success: bool
    synced: int
    errors: int
    skipped: int = 0
    message: Optional[str] = None


class StatusSyncResponse(BaseModel):
    status: str  # 'unchanged', 'cleared', 'no_subscription'
    stripe_status: Optional[str] = None
