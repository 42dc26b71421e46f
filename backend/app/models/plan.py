"""Plan model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, Text
from datetime import datetime, timezone
from app.models.base import Base


class Plan(Base):
    """Subscription plan catalog entry (read-only to billing)"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    billing_interval = Column(String(20), default="monthly", nullable=False)  # 'monthly', 'yearly'
    trial_days = Column(Integer, default=0, nullable=False)
    job_posts_limit = Column(Integer, nullable=True)  # None = unlimited
    featured_jobs_limit = Column(Integer, default=0, nullable=False)
    resume_views_limit = Column(Integer, default=0, nullable=False)
    stripe_price_id = Column(String(255), nullable=True)
    paypal_plan_id = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    @property
    def has_trial(self) -> bool:
        return bool(self.trial_days and self.trial_days > 0)
