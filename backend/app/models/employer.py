"""Employer model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Employer(Base):
    """Employer account that owns a subscription history.

    Profile and authentication data live with the job-board application; only
    the fields billing needs are mapped here.
    """
    __tablename__ = "employers"

    id = Column(Integer, primary_key=True, index=True)
    company_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)
    has_used_trial = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="employer", order_by="Subscription.id")
