"""Subscription lifecycle transitions

`transition` is a pure function of the current subscription snapshot and one
event. It never raises for a surprising event: it returns an ignored outcome
with a reason instead. Side effects are declared, not performed; the
orchestrator runs them after the state change is committed.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from app.models.enums import EventOutcome, SubscriptionStatus, TERMINAL_STATUSES
from app.services.billing.events import EventKind
from app.utils.datetime_utils import ensure_utc


class Effect(str, Enum):
    NOTIFY_ACTIVATED = "notify_activated"
    NOTIFY_PAYMENT_SUCCEEDED = "notify_payment_succeeded"
    NOTIFY_PAYMENT_FAILED = "notify_payment_failed"
    NOTIFY_CANCELLED = "notify_cancelled"
    NOTIFY_SUSPENDED = "notify_suspended"
    NOTIFY_RESUMED = "notify_resumed"
    NOTIFY_EXPIRED = "notify_expired"
    NOTIFY_SUPERSEDED = "notify_superseded"
    PROVIDER_CANCEL = "provider_cancel"
    PROVIDER_CANCEL_NOW = "provider_cancel_now"
    PROVIDER_SUSPEND = "provider_suspend"
    PROVIDER_RESUME = "provider_resume"


PROVIDER_EFFECTS = frozenset({
    Effect.PROVIDER_CANCEL,
    Effect.PROVIDER_CANCEL_NOW,
    Effect.PROVIDER_SUSPEND,
    Effect.PROVIDER_RESUME,
})


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The fields of a subscription the state machine reads"""
    status: SubscriptionStatus
    last_event_at: Optional[datetime] = None
    is_trial: bool = False
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None

    @classmethod
    def of(cls, subscription) -> "SubscriptionSnapshot":
        return cls(
            status=SubscriptionStatus(subscription.status),
            last_event_at=ensure_utc(subscription.last_event_at),
            is_trial=bool(subscription.is_trial),
            trial_ends_at=ensure_utc(subscription.trial_ends_at),
            current_period_end=ensure_utc(subscription.current_period_end),
            grace_period_ends_at=ensure_utc(subscription.grace_period_ends_at),
        )


@dataclass(frozen=True)
class Transition:
    next_status: SubscriptionStatus
    outcome: EventOutcome
    reason: Optional[str] = None
    effects: Tuple[Effect, ...] = ()
    # Column values to write on the subscription row
    changes: Dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.outcome == EventOutcome.APPLIED


def _ignored(current: SubscriptionStatus, outcome: EventOutcome, reason: str, changes=None) -> Transition:
    return Transition(next_status=current, outcome=outcome, reason=reason, changes=changes or {})


def _in_trial(snapshot: SubscriptionSnapshot, now: datetime) -> bool:
    return bool(snapshot.is_trial and snapshot.trial_ends_at and now < snapshot.trial_ends_at)


def transition(
    snapshot: SubscriptionSnapshot,
    kind: EventKind,
    occurred_at: datetime,
    now: datetime,
    immediate: bool = False,
    local: bool = False,
    grace_days: int = 7,
    amount: Optional[Decimal] = None
) -> Transition:
    """Compute the outcome of one event for one subscription.

    Args:
        snapshot: Current subscription state
        kind: Normalized event kind
        occurred_at: Provider timestamp of the event (now for local commands)
        now: Current time
        immediate: Cancellation revokes entitlements now instead of at period end
        local: Event comes from an employer command; provider calls are declared
            and the staleness check is skipped (the command is the latest intent)
        grace_days: Length of the past_due grace period
        amount: Charge amount, used to recognise zero-amount trial invoices

    Returns:
        Transition with the next status, outcome, declared effects and row changes
    """
    current = snapshot.status
    occurred_at = ensure_utc(occurred_at)

    if kind == EventKind.UNKNOWN:
        return _ignored(current, EventOutcome.IGNORED_UNKNOWN, "unrecognized event type")

    if current in TERMINAL_STATUSES:
        return _ignored(current, EventOutcome.IGNORED_NOOP, f"subscription already {current.value}")

    if not local and snapshot.last_event_at and occurred_at < snapshot.last_event_at:
        return _ignored(
            current,
            EventOutcome.IGNORED_STALE,
            f"event from {occurred_at.isoformat()} is older than last applied event"
        )

    # Non-stale events advance the ordering watermark even when they change nothing
    watermark = occurred_at
    if snapshot.last_event_at and snapshot.last_event_at > watermark:
        watermark = snapshot.last_event_at
    base_changes = {"last_event_at": watermark}

    handler = _HANDLERS.get(kind)
    if handler is None:
        return _ignored(current, EventOutcome.IGNORED_UNKNOWN, f"no transition for {kind.value}")

    result = handler(snapshot, occurred_at, now, immediate, local, grace_days, amount)
    if isinstance(result, str):
        return _ignored(current, EventOutcome.IGNORED_NOOP, result, base_changes)

    next_status, changes, effects = result
    return Transition(
        next_status=next_status,
        outcome=EventOutcome.APPLIED,
        effects=tuple(effects),
        changes={**base_changes, **changes, "status": next_status.value},
    )


# Each handler returns a reason string for a no-op, or (next_status, changes, effects)

def _on_activated(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    current = snapshot.status
    if current == SubscriptionStatus.PENDING:
        next_status = SubscriptionStatus.TRIALING if _in_trial(snapshot, now) else SubscriptionStatus.ACTIVE
        return next_status, {"activated_at": now}, [Effect.NOTIFY_ACTIVATED]
    if current == SubscriptionStatus.TRIALING and not _in_trial(snapshot, now):
        return SubscriptionStatus.ACTIVE, {"is_trial": False}, []
    return f"subscription already {current.value}"


def _on_payment_succeeded(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    current = snapshot.status
    trial_invoice = amount is not None and amount == 0 and _in_trial(snapshot, now)
    if current == SubscriptionStatus.PENDING:
        # Payment can arrive before the activation notice
        if trial_invoice:
            return SubscriptionStatus.TRIALING, {"activated_at": now}, [Effect.NOTIFY_ACTIVATED]
        return SubscriptionStatus.ACTIVE, {"activated_at": now}, [
            Effect.NOTIFY_ACTIVATED, Effect.NOTIFY_PAYMENT_SUCCEEDED
        ]
    if current == SubscriptionStatus.TRIALING:
        if trial_invoice:
            return "zero-amount trial invoice"
        return SubscriptionStatus.ACTIVE, {"is_trial": False}, [Effect.NOTIFY_PAYMENT_SUCCEEDED]
    if current == SubscriptionStatus.ACTIVE:
        # Renewal
        return SubscriptionStatus.ACTIVE, {}, [Effect.NOTIFY_PAYMENT_SUCCEEDED]
    if current == SubscriptionStatus.PAST_DUE:
        return SubscriptionStatus.ACTIVE, {"grace_period_ends_at": None}, [Effect.NOTIFY_PAYMENT_SUCCEEDED]
    return f"payment received while subscription is {current.value}"


def _on_payment_failed(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    current = snapshot.status
    if current in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        grace_ends = occurred_at + timedelta(days=grace_days)
        return SubscriptionStatus.PAST_DUE, {"grace_period_ends_at": grace_ends}, [Effect.NOTIFY_PAYMENT_FAILED]
    if current == SubscriptionStatus.PAST_DUE:
        return "grace period already running"
    return f"payment failure while subscription is {current.value}"


def _on_cancelled(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    current = snapshot.status
    changes = {"cancelled_at": now, "grace_period_ends_at": None}
    if current in (SubscriptionStatus.PENDING, SubscriptionStatus.SUSPENDED):
        # No entitlements to keep
        changes.update(cancel_at_period_end=False, entitlements_end_at=None)
    else:
        period_end = snapshot.current_period_end
        if current == SubscriptionStatus.TRIALING:
            period_end = snapshot.trial_ends_at
        if immediate or period_end is None or period_end <= now:
            changes.update(cancel_at_period_end=False, entitlements_end_at=None)
        else:
            changes.update(cancel_at_period_end=True, entitlements_end_at=period_end)

    effects = [Effect.NOTIFY_CANCELLED]
    if local:
        changes["cancel_requested"] = True
        effects.append(Effect.PROVIDER_CANCEL_NOW if immediate else Effect.PROVIDER_CANCEL)
    return SubscriptionStatus.CANCELLED, changes, effects


def _on_suspended(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    current = snapshot.status
    if current in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE):
        effects = [Effect.NOTIFY_SUSPENDED]
        if local:
            effects.append(Effect.PROVIDER_SUSPEND)
        return SubscriptionStatus.SUSPENDED, {"suspended_at": now, "grace_period_ends_at": None}, effects
    return f"cannot suspend a {current.value} subscription"


def _on_resumed(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    current = snapshot.status
    if current == SubscriptionStatus.SUSPENDED:
        effects = [Effect.NOTIFY_RESUMED]
        if local:
            effects.append(Effect.PROVIDER_RESUME)
        return SubscriptionStatus.ACTIVE, {"suspended_at": None}, effects
    return f"cannot resume a {current.value} subscription"


def _on_expired(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    return SubscriptionStatus.EXPIRED, {
        "expired_at": now,
        "entitlements_end_at": None,
        "grace_period_ends_at": None,
    }, [Effect.NOTIFY_EXPIRED]


def _on_grace_expired(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    if snapshot.status != SubscriptionStatus.PAST_DUE:
        return f"no grace period running ({snapshot.status.value})"
    if snapshot.grace_period_ends_at is None or snapshot.grace_period_ends_at > now:
        return "grace period has not ended"
    return _on_expired(snapshot, occurred_at, now, immediate, local, grace_days, amount)


def _on_superseded(snapshot, occurred_at, now, immediate, local, grace_days, amount):
    return SubscriptionStatus.SUPERSEDED, {
        "cancelled_at": now,
        "entitlements_end_at": None,
        "grace_period_ends_at": None,
    }, [Effect.NOTIFY_SUPERSEDED, Effect.PROVIDER_CANCEL_NOW]


_HANDLERS = {
    EventKind.SUBSCRIPTION_ACTIVATED: _on_activated,
    EventKind.PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventKind.PAYMENT_FAILED: _on_payment_failed,
    EventKind.SUBSCRIPTION_CANCELLED: _on_cancelled,
    EventKind.SUBSCRIPTION_SUSPENDED: _on_suspended,
    EventKind.SUBSCRIPTION_RESUMED: _on_resumed,
    EventKind.SUBSCRIPTION_EXPIRED: _on_expired,
    EventKind.GRACE_EXPIRED: _on_grace_expired,
    EventKind.SUPERSEDED: _on_superseded,
}


def has_entitlements(subscription, now: datetime) -> bool:
    """Whether a subscription currently entitles its employer to plan features"""
    status = SubscriptionStatus(subscription.status)
    if status in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        return True
    if status == SubscriptionStatus.CANCELLED:
        ends = ensure_utc(subscription.entitlements_end_at)
        return bool(ends and ends > now)
    return False
