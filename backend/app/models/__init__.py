"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.employer import Employer
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.payment import Payment
from app.models.webhook_event import WebhookEvent
from app.models.provider_call_failure import ProviderCallFailure

# Export all for convenience
__all__ = [
    "Base", "Employer", "Plan", "Subscription", "Payment",
    "WebhookEvent", "ProviderCallFailure"
]
