"""ProviderCallFailure model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from datetime import datetime, timezone
from app.models.base import Base


class ProviderCallFailure(Base):
    """Outbound provider call that exhausted its retries"""
    __tablename__ = "provider_call_failures"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    provider = Column(String(20), nullable=False)
    action = Column(String(50), nullable=False)  # 'cancel', 'suspend', 'resume'
    attempts = Column(Integer, nullable=False)
    last_error = Column(Text, nullable=True)
    payload = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
