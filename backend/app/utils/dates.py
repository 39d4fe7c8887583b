"""Timezone helpers shared by services"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts) -> Optional[datetime]:
    """Convert Stripe epoch seconds to an aware UTC datetime"""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
