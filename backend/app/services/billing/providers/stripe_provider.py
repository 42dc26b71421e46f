"""
Stripe implementation of the payment provider.
"""
import logging
from typing import Any, Optional

import stripe

from app.core.config import settings
from app.models.enums import Provider
from app.services.billing.providers.base import PaymentProvider, ProviderCheckout, RemoteSubscription
from app.services.billing.results import ProviderCallError
from app.utils.datetime_utils import from_unix

logger = logging.getLogger(__name__)


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract a value from a Stripe object or plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


class StripeProvider(PaymentProvider):
    """Stripe-based payment implementation.

    The API key is passed per call instead of being set on the stripe module,
    so several providers (and tests) can coexist in one process.
    """

    provider = Provider.STRIPE

    def __init__(self, api_key: Optional[str] = None, frontend_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")

    def _call(self, action: str, func, *args, **kwargs):
        if not self.api_key:
            raise ProviderCallError("Stripe secret key not configured", provider="stripe", action=action)
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {action} failed: {e}")
            raise ProviderCallError(
                f"Stripe {action} failed: {e}",
                provider="stripe",
                action=action,
                status_code=getattr(e, "http_status", None)
            ) from e

    def create_subscription(self, subscription, plan, employer) -> ProviderCheckout:
        if not plan.stripe_price_id:
            raise ProviderCallError(f"Plan {plan.slug} has no Stripe price", provider="stripe", action="create")

        subscription_data = {
            "metadata": {
                "subscription_id": str(subscription.id),
                "employer_id": str(employer.id),
                "plan": plan.slug,
            }
        }
        if subscription.is_trial and plan.trial_days:
            subscription_data["trial_period_days"] = plan.trial_days

        checkout_params = {
            "mode": "subscription",
            "line_items": [{"price": plan.stripe_price_id, "quantity": 1}],
            "client_reference_id": str(subscription.id),
            "success_url": f"{self.frontend_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}/billing/cancelled",
            "metadata": {"subscription_id": str(subscription.id), "employer_id": str(employer.id)},
            "subscription_data": subscription_data,
        }
        if employer.stripe_customer_id:
            checkout_params["customer"] = employer.stripe_customer_id
        else:
            checkout_params["customer_email"] = employer.email

        session = self._call("create", stripe.checkout.Session.create, **checkout_params)
        session_id = get_stripe_value(session, "id")
        logger.info(f"Created Stripe checkout session {session_id} for subscription {subscription.id}")

        return ProviderCheckout(
            redirect_url=get_stripe_value(session, "url"),
            external_subscription_id=get_stripe_value(session, "subscription"),
            checkout_reference=session_id,
            status="pending",
        )

    def cancel_subscription(self, external_id: str, at_period_end: bool = True, reason: Optional[str] = None) -> None:
        if at_period_end:
            self._call("cancel", stripe.Subscription.modify, external_id, cancel_at_period_end=True)
        else:
            self._call("cancel", stripe.Subscription.cancel, external_id)
        logger.info(f"Cancelled Stripe subscription {external_id} (at_period_end={at_period_end})")

    def suspend_subscription(self, external_id: str, reason: Optional[str] = None) -> None:
        self._call("suspend", stripe.Subscription.modify, external_id, pause_collection={"behavior": "void"})
        logger.info(f"Paused collection on Stripe subscription {external_id}")

    def resume_subscription(self, external_id: str, reason: Optional[str] = None) -> None:
        # An empty string unsets pause_collection
        self._call("resume", stripe.Subscription.modify, external_id, pause_collection="")
        logger.info(f"Resumed collection on Stripe subscription {external_id}")

    def fetch_subscription(self, external_id: str) -> RemoteSubscription:
        sub = self._call("fetch", stripe.Subscription.retrieve, external_id)
        period_start, period_end = subscription_period(sub)
        return RemoteSubscription(
            external_subscription_id=external_id,
            status=get_stripe_value(sub, "status", "unknown"),
            period_start=period_start,
            period_end=period_end,
            paused=bool(get_stripe_value(sub, "pause_collection")),
            cancel_at_period_end=bool(get_stripe_value(sub, "cancel_at_period_end", False)),
            raw={"id": external_id, "status": get_stripe_value(sub, "status")},
        )


def subscription_period(sub: Any):
    """Current period bounds of a Stripe subscription.

    Newer API versions moved the period onto subscription items.
    """
    start = get_stripe_value(sub, "current_period_start")
    end = get_stripe_value(sub, "current_period_end")
    if start is None or end is None:
        items = get_stripe_value(get_stripe_value(sub, "items"), "data", [])
        if items:
            start = start if start is not None else get_stripe_value(items[0], "current_period_start")
            end = end if end is not None else get_stripe_value(items[0], "current_period_end")
    return from_unix(start), from_unix(end)
