"""
Interface for payment providers.

Keeps the reconciliation core independent of the Stripe and PayPal APIs.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from app.models.enums import Provider


@dataclass(frozen=True)
class ProviderCheckout:
    """Result of starting a subscription at the provider"""
    redirect_url: Optional[str]
    external_subscription_id: Optional[str] = None
    checkout_reference: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class RemoteSubscription:
    """Provider-side view of a subscription, used for sync"""
    external_subscription_id: str
    status: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    paused: bool = False
    cancel_at_period_end: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class PaymentProvider(ABC):
    """Abstract interface for payment providers.

    Every method raises ProviderCallError on any failure.
    """

    provider: Provider

    @abstractmethod
    def create_subscription(self, subscription, plan, employer) -> ProviderCheckout:
        """
        Start a subscription for a pending local subscription row.

        Args:
            subscription: Local Subscription (its id is echoed back in webhooks)
            plan: Plan being purchased
            employer: Employer paying for it

        Returns:
            ProviderCheckout with the URL the employer must visit to approve payment
        """

    @abstractmethod
    def cancel_subscription(self, external_id: str, at_period_end: bool = True, reason: Optional[str] = None) -> None:
        """Cancel at the provider, either now or when the current period ends"""

    @abstractmethod
    def suspend_subscription(self, external_id: str, reason: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def resume_subscription(self, external_id: str, reason: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def fetch_subscription(self, external_id: str) -> RemoteSubscription:
        """Fetch the current provider-side state of a subscription"""
