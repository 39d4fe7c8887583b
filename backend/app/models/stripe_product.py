"""StripeProduct model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class StripeProduct(Base):
    """Maps a Stripe product to a plan tier"""
    __tablename__ = "stripe_products"

    id = Column(Integer, primary_key=True, index=True)
    stripe_product_id = Column(String(255), unique=True, nullable=False, index=True)
    plan_tier = Column(String(50), nullable=False)  # 'pro', 'ultra_pro'
    plan_name = Column(String(100), nullable=False)  # Display name, e.g. 'Pro'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
