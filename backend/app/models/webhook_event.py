"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey, UniqueConstraint
from datetime import datetime, timezone
from app.models.base import Base


class WebhookEvent(Base):
    """Provider event log for idempotency and audit (append-only)"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False)
    external_event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)  # Raw provider event type
    kind = Column(String(50), nullable=False)  # Normalized event kind
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    outcome = Column(String(40), nullable=False)
    resulting_status = Column(String(20), nullable=True)
    detail = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('provider', 'external_event_id', name='uq_webhook_events_provider_event'),
    )
