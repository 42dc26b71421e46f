"""Employer billing notifications sent through Resend"""
import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Optional

import resend

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionNotice:
    """What a notification needs to know about a subscription, captured at commit time"""
    subscription_id: int
    employer_email: str
    company_name: str
    plan_name: str
    provider: str
    status: str
    external_subscription_id: Optional[str] = None
    entitlements_end_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    reason: Optional[str] = None


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "now"


# notification name -> (subject, body builder)
TEMPLATES = {
    "activated": (
        "Your {plan} subscription is active",
        lambda n: f"<p>Your <strong>{escape(n.plan_name)}</strong> subscription is now active. Thank you!</p>",
    ),
    "payment_succeeded": (
        "Payment received for {plan}",
        lambda n: f"<p>We received your payment for the <strong>{escape(n.plan_name)}</strong> plan.</p>",
    ),
    "payment_failed": (
        "Action required: payment failed for {plan}",
        lambda n: (
            f"<p>We could not collect payment for your <strong>{escape(n.plan_name)}</strong> subscription.</p>"
            f"<p>Please update your payment method before {_date(n.grace_period_ends_at)} "
            f"to keep access to your plan features.</p>"
        ),
    ),
    "cancelled": (
        "Your {plan} subscription has been cancelled",
        lambda n: (
            f"<p>Your <strong>{escape(n.plan_name)}</strong> subscription has been cancelled.</p>"
            + (f"<p>You keep access until {_date(n.entitlements_end_at)}.</p>" if n.entitlements_end_at else "")
        ),
    ),
    "suspended": (
        "Your {plan} subscription is suspended",
        lambda n: f"<p>Your <strong>{escape(n.plan_name)}</strong> subscription is suspended. Plan features are paused.</p>",
    ),
    "resumed": (
        "Your {plan} subscription has been resumed",
        lambda n: f"<p>Your <strong>{escape(n.plan_name)}</strong> subscription is active again.</p>",
    ),
    "expired": (
        "Your {plan} subscription has expired",
        lambda n: f"<p>Your <strong>{escape(n.plan_name)}</strong> subscription has expired.</p>",
    ),
    "superseded": (
        "Your {plan} subscription has been replaced",
        lambda n: f"<p>Your <strong>{escape(n.plan_name)}</strong> subscription was replaced by a new plan.</p>",
    ),
    "trial_ending": (
        "Your {plan} trial ends soon",
        lambda n: (
            f"<p>Your free trial of <strong>{escape(n.plan_name)}</strong> ends on {_date(n.trial_ends_at)}.</p>"
            f"<p>Your subscription will continue automatically unless you cancel it.</p>"
        ),
    ),
}


class EmailNotifier:
    """Sends billing notifications. Failures are logged, never raised."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_email = from_email or settings.RESEND_FROM_EMAIL

    def notify(self, name: str, notice: SubscriptionNotice) -> bool:
        """Send notification `name` (a TEMPLATES key) about a subscription.

        Returns:
            bool: True on success, False when skipped or failed
        """
        template = TEMPLATES.get(name)
        if template is None:
            logger.error(f"Unknown notification {name}")
            return False

        if not self.api_key:
            logger.warning(f"RESEND_API_KEY is not set; skipping {name} email for subscription {notice.subscription_id}")
            return False

        subject, body = template
        html = f"<p>Hello {escape(notice.company_name)},</p>{body(notice)}"
        try:
            resend.api_key = self.api_key
            response = resend.Emails.send({
                "from": self.from_email,
                "to": notice.employer_email,
                "subject": subject.format(plan=notice.plan_name),
                "html": html,
            })
        except Exception as exc:
            logger.error(f"Failed to send {name} email for subscription {notice.subscription_id}: {exc}")
            return False

        email_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        if not email_id:
            logger.error(f"Email send returned invalid response: {response}")
            return False

        logger.info(f"Sent {name} email for subscription {notice.subscription_id} (id: {email_id})")
        return True
