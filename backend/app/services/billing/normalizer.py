"""Map provider webhook payloads onto canonical billing events

Unrecognized event types become EventKind.UNKNOWN and are logged, never
rejected, so new provider event types do not break delivery.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from app.models.enums import PaymentStatus, Provider
from app.services.billing.events import EventKind, NormalizedEvent, VerifiedEvent
from app.services.billing.providers.base import RemoteSubscription
from app.services.billing.results import MalformedPayloadError
from app.utils.datetime_utils import from_unix, parse_iso

logger = logging.getLogger(__name__)

# Stripe event type -> kind, for types whose kind does not depend on the payload
STRIPE_EVENT_KINDS = {
    "checkout.session.completed": EventKind.SUBSCRIPTION_ACTIVATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_CANCELLED,
    "customer.subscription.paused": EventKind.SUBSCRIPTION_SUSPENDED,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION_RESUMED,
    "invoice.paid": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
}

# Stripe subscription.status -> kind (customer.subscription.created/updated and sync)
STRIPE_STATUS_KINDS = {
    "active": EventKind.SUBSCRIPTION_ACTIVATED,
    "trialing": EventKind.SUBSCRIPTION_ACTIVATED,
    "past_due": EventKind.PAYMENT_FAILED,
    "canceled": EventKind.SUBSCRIPTION_CANCELLED,
    "unpaid": EventKind.SUBSCRIPTION_EXPIRED,
    "incomplete_expired": EventKind.SUBSCRIPTION_EXPIRED,
    "paused": EventKind.SUBSCRIPTION_SUSPENDED,
}

PAYPAL_EVENT_KINDS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": EventKind.SUBSCRIPTION_ACTIVATED,
    "BILLING.SUBSCRIPTION.CANCELLED": EventKind.SUBSCRIPTION_CANCELLED,
    "BILLING.SUBSCRIPTION.SUSPENDED": EventKind.SUBSCRIPTION_SUSPENDED,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": EventKind.SUBSCRIPTION_RESUMED,
    "BILLING.SUBSCRIPTION.EXPIRED": EventKind.SUBSCRIPTION_EXPIRED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": EventKind.PAYMENT_FAILED,
    "PAYMENT.SALE.COMPLETED": EventKind.PAYMENT_SUCCEEDED,
}

# PayPal subscription.status -> kind (sync)
PAYPAL_STATUS_KINDS = {
    "ACTIVE": EventKind.SUBSCRIPTION_ACTIVATED,
    "SUSPENDED": EventKind.SUBSCRIPTION_SUSPENDED,
    "CANCELLED": EventKind.SUBSCRIPTION_CANCELLED,
    "EXPIRED": EventKind.SUBSCRIPTION_EXPIRED,
}


def _ref(value: Any) -> Optional[int]:
    """Parse a local subscription id echoed back by the provider"""
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _cents(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(int(value)) / 100
    except (TypeError, ValueError):
        return None


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _currency(value: Any) -> Optional[str]:
    return value.upper() if isinstance(value, str) and value else None


def normalize(event: VerifiedEvent) -> NormalizedEvent:
    """Normalize a verified webhook into a provider-agnostic event

    Raises:
        MalformedPayloadError: Missing event id, type or timestamp, or a field of the wrong shape
    """
    try:
        if event.provider == Provider.STRIPE:
            normalized = _normalize_stripe(event.payload)
        elif event.provider == Provider.PAYPAL:
            normalized = _normalize_paypal(event.payload)
        else:
            raise MalformedPayloadError(f"Unsupported provider {event.provider}")
    except (AttributeError, TypeError, ValueError, KeyError, IndexError) as e:
        # Signed by the provider but not shaped like any event we handle
        raise MalformedPayloadError(f"{event.provider.value} event has an unexpected structure: {e}") from e

    if normalized.kind == EventKind.UNKNOWN:
        logger.info(f"Unhandled {event.provider.value} event type {normalized.event_type} ({normalized.external_event_id})")
    return normalized


# ============================================================================
# STRIPE
# ============================================================================

def _stripe_subscription_ref(obj: Dict[str, Any]) -> Optional[int]:
    metadata = obj.get("metadata") or {}
    return _ref(metadata.get("subscription_id"))


def _stripe_invoice_subscription(invoice: Dict[str, Any]):
    """(subscription id, local ref) of an invoice across Stripe API versions"""
    sub_id = invoice.get("subscription")
    details = invoice.get("subscription_details") or {}
    parent = invoice.get("parent") or {}
    if parent.get("subscription_details"):
        details = parent["subscription_details"]
        sub_id = sub_id or details.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    return sub_id, _ref((details.get("metadata") or {}).get("subscription_id"))


def _stripe_invoice_period(invoice: Dict[str, Any]):
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines and lines[0].get("period"):
        period = lines[0]["period"]
        return from_unix(period.get("start")), from_unix(period.get("end"))
    return from_unix(invoice.get("period_start")), from_unix(invoice.get("period_end"))


def _stripe_subscription_period(sub: Dict[str, Any]):
    start = sub.get("current_period_start")
    end = sub.get("current_period_end")
    items = (sub.get("items") or {}).get("data") or []
    if items:
        start = start if start is not None else items[0].get("current_period_start")
        end = end if end is not None else items[0].get("current_period_end")
    return from_unix(start), from_unix(end)


def _stripe_subscription_kind(sub: Dict[str, Any], previous: Dict[str, Any]) -> EventKind:
    if sub.get("pause_collection"):
        return EventKind.SUBSCRIPTION_SUSPENDED
    if "pause_collection" in previous and previous["pause_collection"] and sub.get("status") == "active":
        return EventKind.SUBSCRIPTION_RESUMED
    return STRIPE_STATUS_KINDS.get(sub.get("status"), EventKind.UNKNOWN)


def _normalize_stripe(payload: Dict[str, Any]) -> NormalizedEvent:
    event_id = payload.get("id")
    event_type = payload.get("type")
    occurred_at = from_unix(payload.get("created"))
    data = payload.get("data")
    if not _is_text(event_id) or not _is_text(event_type) or occurred_at is None or not isinstance(data, dict):
        raise MalformedPayloadError("Stripe event is missing id, type, created or data")

    obj = data.get("object")
    if not isinstance(obj, dict):
        raise MalformedPayloadError(f"Stripe event {event_id} has no data.object")
    previous = data.get("previous_attributes") or {}

    fields: Dict[str, Any] = {}
    if event_type == "checkout.session.completed":
        if obj.get("mode") != "subscription":
            kind = EventKind.UNKNOWN
        else:
            kind = EventKind.SUBSCRIPTION_ACTIVATED
        fields.update(
            external_subscription_id=obj.get("subscription"),
            subscription_ref=_ref(obj.get("client_reference_id")) or _stripe_subscription_ref(obj),
            checkout_reference=obj.get("id"),
            customer_id=obj.get("customer"),
            amount=_cents(obj.get("amount_total")),
            currency=_currency(obj.get("currency")),
        )
    elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
        kind = _stripe_subscription_kind(obj, previous)
        period_start, period_end = _stripe_subscription_period(obj)
        if kind == EventKind.SUBSCRIPTION_ACTIVATED and obj.get("cancel_at_period_end"):
            # Cancellation scheduled from the Stripe customer portal
            kind = EventKind.SUBSCRIPTION_CANCELLED
        fields.update(
            external_subscription_id=obj.get("id"),
            subscription_ref=_stripe_subscription_ref(obj),
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        )
    elif event_type.startswith("customer.subscription."):
        kind = STRIPE_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
        period_start, period_end = _stripe_subscription_period(obj)
        fields.update(
            external_subscription_id=obj.get("id"),
            subscription_ref=_stripe_subscription_ref(obj),
            period_start=period_start,
            period_end=period_end,
        )
    elif event_type.startswith("invoice."):
        kind = STRIPE_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
        sub_id, ref = _stripe_invoice_subscription(obj)
        period_start, period_end = _stripe_invoice_period(obj)
        fields.update(
            external_subscription_id=sub_id,
            subscription_ref=ref,
            currency=_currency(obj.get("currency")),
            period_start=period_start,
            period_end=period_end,
        )
        if kind == EventKind.PAYMENT_SUCCEEDED:
            fields.update(
                amount=_cents(obj.get("amount_paid")),
                transaction_id=obj.get("id"),
                payment_status=PaymentStatus.SUCCEEDED.value,
            )
        elif kind == EventKind.PAYMENT_FAILED:
            # One record per collection attempt on the same invoice
            fields.update(
                amount=_cents(obj.get("amount_due")),
                transaction_id=f"{obj.get('id')}:{obj.get('attempt_count') or 1}",
                payment_status=PaymentStatus.FAILED.value,
            )
        if not sub_id and kind != EventKind.UNKNOWN:
            # One-off invoice, not a subscription charge
            kind = EventKind.UNKNOWN
    else:
        kind = EventKind.UNKNOWN

    return NormalizedEvent(
        provider=Provider.STRIPE,
        kind=kind,
        external_event_id=event_id,
        occurred_at=occurred_at,
        event_type=event_type,
        raw_payload=payload,
        **fields
    )


# ============================================================================
# PAYPAL
# ============================================================================

def _paypal_billing_period(resource: Dict[str, Any]):
    billing_info = resource.get("billing_info") or {}
    last_payment = billing_info.get("last_payment") or {}
    return parse_iso(last_payment.get("time")), parse_iso(billing_info.get("next_billing_time"))


def _normalize_paypal(payload: Dict[str, Any]) -> NormalizedEvent:
    event_id = payload.get("id")
    event_type = payload.get("event_type")
    occurred_at = parse_iso(payload.get("create_time"))
    resource = payload.get("resource")
    if not _is_text(event_id) or not _is_text(event_type) or occurred_at is None or not isinstance(resource, dict):
        raise MalformedPayloadError("PayPal event is missing id, event_type, create_time or resource")

    kind = PAYPAL_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
    fields: Dict[str, Any] = {}

    if event_type.startswith("BILLING.SUBSCRIPTION."):
        period_start, period_end = _paypal_billing_period(resource)
        fields.update(
            external_subscription_id=resource.get("id"),
            subscription_ref=_ref(resource.get("custom_id")),
            period_start=period_start,
            period_end=period_end,
        )
        if kind == EventKind.SUBSCRIPTION_CANCELLED:
            # The current period is already paid for
            fields["cancel_at_period_end"] = True
        elif kind == EventKind.PAYMENT_FAILED:
            failed = (resource.get("billing_info") or {}).get("last_failed_payment") or {}
            amount = failed.get("amount") or {}
            fields.update(
                amount=_decimal(amount.get("value")),
                currency=_currency(amount.get("currency_code")),
                transaction_id=event_id,
                payment_status=PaymentStatus.FAILED.value,
            )
    elif event_type in ("PAYMENT.SALE.COMPLETED", "PAYMENT.SALE.REFUNDED"):
        amount = resource.get("amount") or {}
        fields.update(
            external_subscription_id=resource.get("billing_agreement_id"),
            subscription_ref=_ref(resource.get("custom_id") or resource.get("custom")),
            amount=_decimal(amount.get("total")),
            currency=_currency(amount.get("currency")),
            transaction_id=resource.get("id"),
            payment_status=(
                PaymentStatus.SUCCEEDED.value if event_type == "PAYMENT.SALE.COMPLETED"
                else PaymentStatus.REFUNDED.value
            ),
        )
        if not fields["external_subscription_id"] and not fields["subscription_ref"]:
            # One-off sale, not a subscription charge
            kind = EventKind.UNKNOWN

    return NormalizedEvent(
        provider=Provider.PAYPAL,
        kind=kind,
        external_event_id=event_id,
        occurred_at=occurred_at,
        event_type=event_type,
        raw_payload=payload,
        **fields
    )


# ============================================================================
# PROVIDER SYNC
# ============================================================================

def normalize_remote_status(provider: Provider, remote: RemoteSubscription) -> Optional[EventKind]:
    """Map a fetched provider subscription status onto an event kind

    Returns None for statuses that carry no lifecycle information (e.g. awaiting approval).
    """
    if provider == Provider.STRIPE:
        if remote.paused:
            return EventKind.SUBSCRIPTION_SUSPENDED
        kind = STRIPE_STATUS_KINDS.get(remote.status)
        if kind == EventKind.SUBSCRIPTION_ACTIVATED and remote.cancel_at_period_end:
            return EventKind.SUBSCRIPTION_CANCELLED
        return kind
    return PAYPAL_STATUS_KINDS.get(str(remote.status).upper())
