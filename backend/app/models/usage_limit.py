"""UsageLimit model"""
from sqlalchemy import Column, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class UsageLimit(Base):
    """Per-user image generation counter for the current period"""
    __tablename__ = "usage_limits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    used_count = Column(Integer, default=0, nullable=False)  # Only changed by consume_generation and period rollover
    limit_count = Column(Integer, default=0, nullable=False)  # Derived from the entitlement tier
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="usage_limit")

    @property
    def remaining(self) -> int:
        return max(0, self.limit_count - self.used_count)
