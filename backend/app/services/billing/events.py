"""Provider-agnostic event and command types"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from app.models.enums import Provider


class EventKind(str, Enum):
    SUBSCRIPTION_ACTIVATED = "SubscriptionActivated"
    PAYMENT_SUCCEEDED = "PaymentSucceeded"
    PAYMENT_FAILED = "PaymentFailed"
    SUBSCRIPTION_CANCELLED = "SubscriptionCancelled"
    SUBSCRIPTION_SUSPENDED = "SubscriptionSuspended"
    SUBSCRIPTION_RESUMED = "SubscriptionResumed"
    SUBSCRIPTION_EXPIRED = "SubscriptionExpired"
    UNKNOWN = "Unknown"
    # Produced by the orchestrator, never by a provider
    GRACE_EXPIRED = "GraceExpired"
    SUPERSEDED = "Superseded"


@dataclass(frozen=True)
class VerifiedEvent:
    """Webhook payload whose origin has been checked (or explicitly not, in development)"""
    provider: Provider
    payload: Dict[str, Any]
    verified: bool = True


@dataclass(frozen=True)
class NormalizedEvent:
    """Provider-agnostic view of a webhook notification or a synthetic event"""
    provider: Provider
    kind: EventKind
    external_event_id: str
    occurred_at: datetime
    event_type: str
    external_subscription_id: Optional[str] = None
    # Local subscription id echoed back by the provider (Stripe client_reference_id, PayPal custom_id)
    subscription_ref: Optional[int] = None
    checkout_reference: Optional[str] = None
    customer_id: Optional[str] = None  # Provider customer, stored on the employer
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_status: Optional[str] = None  # Set when the event carries a charge to record
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    # Cancellation keeps access until the period end instead of revoking now
    cancel_at_period_end: bool = False
    raw_payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class CommandAction(str, Enum):
    CANCEL = "cancel"
    SUSPEND = "suspend"
    RESUME = "resume"


@dataclass(frozen=True)
class LocalCommand:
    """Employer-initiated action on a subscription"""
    action: CommandAction
    immediate: bool = False
    reason: Optional[str] = None


COMMAND_EVENT_KINDS = {
    CommandAction.CANCEL: EventKind.SUBSCRIPTION_CANCELLED,
    CommandAction.SUSPEND: EventKind.SUBSCRIPTION_SUSPENDED,
    CommandAction.RESUME: EventKind.SUBSCRIPTION_RESUMED,
}
