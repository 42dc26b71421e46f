"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Numeric, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Subscription(Base):
    """One employer's relationship to one plan over time.

    Rows are never deleted: cancellation, expiry and supersession are terminal
    statuses. Status changes go through the reconciliation orchestrator only.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    employer_id = Column(Integer, ForeignKey("employers.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    provider = Column(String(20), nullable=False)  # 'stripe', 'paypal'
    external_subscription_id = Column(String(255), nullable=True)  # Set once the provider confirms
    checkout_reference = Column(String(255), nullable=True, index=True)  # Stripe checkout session id
    status = Column(String(20), nullable=False, default="pending")
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    is_trial = Column(Boolean, default=False, nullable=False)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    trial_ending_notified_at = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    entitlements_end_at = Column(DateTime(timezone=True), nullable=True)  # Cancelled-at-period-end access window
    grace_period_ends_at = Column(DateTime(timezone=True), nullable=True)  # Set while past_due

    # Last event applied to this row (idempotency / ordering)
    last_event_id = Column(String(255), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    employer = relationship("Employer", back_populates="subscriptions")
    plan = relationship("Plan")
    payments = relationship("Payment", back_populates="subscription", order_by="Payment.id")

    __table_args__ = (
        UniqueConstraint('provider', 'external_subscription_id', name='uq_subscriptions_provider_external_id'),
        Index('ix_subscriptions_employer_status', 'employer_id', 'status'),
        Index('ix_subscriptions_status_grace', 'status', 'grace_period_ends_at'),
    )
