"""Enumerations stored as plain strings on billing models"""
from enum import Enum


class Provider(str, Enum):
    """Payment provider a subscription is billed through"""
    STRIPE = "stripe"
    PAYPAL = "paypal"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.SUPERSEDED,
})

# Statuses that entitle the employer to plan features
ACTIVE_LIKE_STATUSES = frozenset({
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
})


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class EventOutcome(str, Enum):
    """Processing outcome recorded in the webhook event log"""
    APPLIED = "applied"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_STALE = "ignored_stale"
    IGNORED_NOOP = "ignored_noop"
    IGNORED_UNKNOWN = "ignored_unknown"
    IGNORED_UNKNOWN_SUBSCRIPTION = "ignored_unknown_subscription"
    REJECTED = "rejected"
