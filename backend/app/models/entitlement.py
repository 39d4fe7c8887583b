"""Entitlement model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Entitlement(Base):
    """Locally cached plan tier for a user, reconciled from Stripe"""
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    plan_tier = Column(String(50), nullable=False, default="free")  # 'free', 'pro', 'ultra_pro'
    plan_name = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False, default="active")  # 'active', 'past_due', 'canceled', ...
    product_id = Column(String(255), nullable=True)  # Stripe product ID of the selected subscription
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    source_version = Column(BigInteger, nullable=False, default=0)  # Epoch seconds of the Stripe state last written
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="entitlement")

    @property
    def is_paid(self) -> bool:
        return self.status == "active" and self.plan_tier != "free"

    def __repr__(self):
        return f"<Entitlement(user_id={self.user_id}, plan_tier={self.plan_tier}, status={self.status})>"
