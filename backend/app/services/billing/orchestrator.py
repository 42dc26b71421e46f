"""Reconciliation orchestrator

Applies normalized provider events and employer commands to subscriptions.
Every read-modify-write of a subscription runs under that subscription's
lock, and the subscription row, the event log entry and any payment record
are committed in one transaction. Side effects (emails, provider calls) run
only after the lock is released.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.config import settings
from app.core.logging import operator_logger
from app.core.metrics import transitions_counter, webhook_events_counter
from app.models.employer import Employer
from app.models.enums import EventOutcome, Provider, SubscriptionStatus, TERMINAL_STATUSES
from app.models.payment import Payment
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.services.billing.events import COMMAND_EVENT_KINDS, EventKind, LocalCommand, NormalizedEvent
from app.services.billing.locks import employer_lock_key, subscription_lock_key
from app.services.billing.normalizer import normalize_remote_status
from app.services.billing.notifications import SubscriptionNotice
from app.services.billing.results import (
    ApplyResult, ErrorKind, LockTimeoutError, PersistenceError, ProviderCallError, RETRYABLE_ERRORS,
    SubscribeResult,
)
from app.services.billing.retry_queue import run_provider_call
from app.services.billing.state_machine import (
    PROVIDER_EFFECTS, Effect, SubscriptionSnapshot, Transition, transition,
)
from app.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

OUTCOME_ERRORS = {
    EventOutcome.APPLIED: None,
    EventOutcome.IGNORED_DUPLICATE: ErrorKind.DUPLICATE_EVENT,
    EventOutcome.IGNORED_STALE: ErrorKind.STALE_EVENT,
    EventOutcome.IGNORED_NOOP: ErrorKind.INVALID_TRANSITION,
    EventOutcome.IGNORED_UNKNOWN: ErrorKind.UNKNOWN_EVENT_TYPE,
    EventOutcome.IGNORED_UNKNOWN_SUBSCRIPTION: ErrorKind.UNKNOWN_SUBSCRIPTION,
    EventOutcome.REJECTED: ErrorKind.MALFORMED_PAYLOAD,
}

# Provider effect -> (provider action, at_period_end)
PROVIDER_ACTIONS = {
    Effect.PROVIDER_CANCEL: ("cancel", True),
    Effect.PROVIDER_CANCEL_NOW: ("cancel", False),
    Effect.PROVIDER_SUSPEND: ("suspend", None),
    Effect.PROVIDER_RESUME: ("resume", None),
}

Deferred = Tuple[ApplyResult, Optional[SubscriptionNotice], Tuple[Effect, ...]]


class ReconciliationOrchestrator:
    """Serializes all state changes of a subscription

    Args:
        session_factory: Creates SQLAlchemy sessions (SessionLocal)
        locker: Keyed exclusive lock (RedisLocker)
        providers: ProviderSet for outbound provider calls
        notifier: EmailNotifier (or anything with notify(name, notice))
        retry_queue: ProviderCallQueue for failed provider calls
        clock: Returns the current aware UTC datetime
        grace_days: Length of the past_due grace period
    """

    def __init__(
        self,
        session_factory,
        locker,
        providers,
        notifier=None,
        retry_queue=None,
        clock: Callable[[], datetime] = utcnow,
        grace_days: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.locker = locker
        self.providers = providers
        self.notifier = notifier
        self.retry_queue = retry_queue
        self.clock = clock
        self.grace_days = grace_days if grace_days is not None else settings.PAST_DUE_GRACE_DAYS

    # ========================================================================
    # PROVIDER EVENTS
    # ========================================================================

    def apply_event(self, event: NormalizedEvent) -> ApplyResult:
        """Apply a normalized provider event to the subscription it refers to"""
        db = self.session_factory()
        try:
            prior = self._find_logged(db, event.provider, event.external_event_id)
            if prior is not None:
                return self._duplicate(prior)
            subscription = self._resolve_subscription(db, event)
            subscription_id = subscription.id if subscription is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to resolve subscription for event {event.external_event_id}: {e}")
            return ApplyResult.failure(ErrorKind.PERSISTENCE_FAILURE, "Database unavailable")
        finally:
            db.close()

        if subscription_id is None:
            return self._record_unmatched(event)

        # Stripe deletion and PayPal immediate cancellations revoke access now
        immediate = event.kind == EventKind.SUBSCRIPTION_CANCELLED and not event.cancel_at_period_end
        return self._apply(subscription_id, event, immediate=immediate)

    def _resolve_subscription(self, db, event: NormalizedEvent) -> Optional[Subscription]:
        query = db.query(Subscription).filter(Subscription.provider == event.provider.value)
        subscription = None
        if event.external_subscription_id:
            subscription = query.filter(
                Subscription.external_subscription_id == event.external_subscription_id
            ).first()
        if subscription is None and event.subscription_ref is not None:
            subscription = query.filter(Subscription.id == event.subscription_ref).first()
        if subscription is None and event.checkout_reference:
            subscription = query.filter(Subscription.checkout_reference == event.checkout_reference).first()
        return subscription

    def _record_unmatched(self, event: NormalizedEvent) -> ApplyResult:
        """Log an event that matches no local subscription so redeliveries are duplicates"""
        if event.kind == EventKind.UNKNOWN:
            outcome, reason = EventOutcome.IGNORED_UNKNOWN, "unrecognized event type"
        else:
            outcome, reason = EventOutcome.IGNORED_UNKNOWN_SUBSCRIPTION, "no matching subscription"
            logger.warning(
                f"No {event.provider.value} subscription matches event {event.external_event_id} "
                f"({event.event_type}, external id {event.external_subscription_id})"
            )

        db = self.session_factory()
        try:
            self._write_event_log(db, event, None, outcome, None, reason)
            db.commit()
        except IntegrityError:
            db.rollback()
            prior = self._find_logged(db, event.provider, event.external_event_id)
            if prior is not None:
                return self._duplicate(prior)
            return ApplyResult.failure(ErrorKind.PERSISTENCE_FAILURE, "Could not record event")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record event {event.external_event_id}: {e}")
            return ApplyResult.failure(ErrorKind.PERSISTENCE_FAILURE, "Could not record event")
        finally:
            db.close()

        webhook_events_counter.labels(
            provider=event.provider.value, kind=event.kind.value, outcome=outcome.value
        ).inc()
        return ApplyResult(
            subscription_id=None,
            new_status=None,
            applied=False,
            outcome=outcome,
            error=OUTCOME_ERRORS[outcome],
            reason=reason
        )

    def record_rejected(self, provider: Provider, external_event_id: str, event_type: str, detail: str,
                        payload: Optional[dict] = None) -> None:
        """Log a verified delivery that could not be normalized"""
        db = self.session_factory()
        try:
            db.add(WebhookEvent(
                provider=provider.value,
                external_event_id=external_event_id,
                event_type=event_type or "unknown",
                kind=EventKind.UNKNOWN.value,
                outcome=EventOutcome.REJECTED.value,
                detail=detail,
                payload=payload,
                created_at=self.clock()
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Could not record rejected event {external_event_id}: {e}")
        finally:
            db.close()

    # ========================================================================
    # EMPLOYER COMMANDS
    # ========================================================================

    def execute_command(self, subscription_id: int, command: LocalCommand) -> ApplyResult:
        """Apply an employer-initiated cancel, suspend or resume"""
        db = self.session_factory()
        try:
            subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
            provider = subscription.provider if subscription is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to load subscription {subscription_id}: {e}")
            return ApplyResult.failure(ErrorKind.PERSISTENCE_FAILURE, "Database unavailable", subscription_id)
        finally:
            db.close()

        if provider is None:
            return ApplyResult.failure(ErrorKind.NOT_FOUND, "Subscription not found", subscription_id)

        event = self._synthetic_event(
            provider,
            COMMAND_EVENT_KINDS[command.action],
            f"cmd_{uuid.uuid4().hex}",
            f"local.{command.action.value}",
            reason=command.reason
        )
        return self._apply(subscription_id, event, immediate=command.immediate, local=True)

    # ========================================================================
    # SUBSCRIBE
    # ========================================================================

    def subscribe(self, employer_id: int, plan_id: int, provider: Provider) -> SubscribeResult:
        """Start a new subscription, superseding every non-terminal one the employer has"""
        provider = Provider(provider)
        if provider not in self.providers:
            return SubscribeResult(None, None, error=ErrorKind.NOT_FOUND, reason=f"{provider.value} is not available")

        db = self.session_factory()
        deferred: List[Deferred] = []
        try:
            employer = db.query(Employer).filter(Employer.id == employer_id).first()
            plan = db.query(Plan).filter(Plan.id == plan_id, Plan.is_active.is_(True)).first()
            if employer is None or plan is None:
                return SubscribeResult(None, None, error=ErrorKind.NOT_FOUND, reason="Employer or plan not found")

            try:
                with self.locker.hold(employer_lock_key(employer_id)):
                    prior_ids = [
                        row.id for row in db.query(Subscription.id).filter(
                            Subscription.employer_id == employer_id,
                            Subscription.status.notin_([s.value for s in TERMINAL_STATUSES])
                        ).all()
                    ]
                    for prior_id in prior_ids:
                        step = self._supersede(prior_id)
                        deferred.append(step)
                        if step[0].error in RETRYABLE_ERRORS:
                            return SubscribeResult(
                                None, None,
                                superseded_ids=tuple(d[0].subscription_id for d in deferred if d[0].applied),
                                error=step[0].error,
                                reason="Could not replace the current subscription, please retry"
                            )

                    subscription, used_trial = self._create_pending(db, employer, plan, provider)
            except LockTimeoutError:
                return SubscribeResult(None, None, error=ErrorKind.LOCK_TIMEOUT, reason="Subscription change in progress")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to create subscription for employer {employer_id}: {e}")
                return SubscribeResult(None, None, error=ErrorKind.PERSISTENCE_FAILURE, reason="Could not create subscription")
            finally:
                for step in deferred:
                    self._dispatch(*step[1:])

            superseded_ids = tuple(d[0].subscription_id for d in deferred if d[0].applied)
            subscription_id = subscription.id

            # Network call, made without any lock held
            try:
                checkout = self.providers.get(provider).create_subscription(subscription, plan, employer)
            except ProviderCallError as e:
                logger.error(f"Provider create failed for subscription {subscription_id}: {e}")
                self._abandon(subscription_id, employer_id, provider, used_trial)
                return SubscribeResult(
                    subscription_id,
                    SubscriptionStatus.EXPIRED.value,
                    superseded_ids=superseded_ids,
                    error=ErrorKind.PROVIDER_CALL_FAILURE,
                    reason="Payment provider is unavailable, please try again later"
                )

            self._bind_checkout(subscription_id, checkout)
            logger.info(
                f"Employer {employer_id} started {provider.value} subscription {subscription_id} "
                f"(superseded: {list(superseded_ids)})"
            )
            return SubscribeResult(
                subscription_id,
                SubscriptionStatus.PENDING.value,
                redirect_url=checkout.redirect_url,
                superseded_ids=superseded_ids
            )
        finally:
            db.close()

    def _supersede(self, subscription_id: int) -> Deferred:
        db = self.session_factory()
        try:
            provider = db.query(Subscription.provider).filter(Subscription.id == subscription_id).scalar()
        finally:
            db.close()
        event = self._synthetic_event(provider, EventKind.SUPERSEDED, f"supersede_{uuid.uuid4().hex}", "local.superseded")
        return self._apply_deferred(subscription_id, event, local=True)

    def _create_pending(self, db, employer: Employer, plan: Plan, provider: Provider):
        now = self.clock()
        used_trial = plan.has_trial and not employer.has_used_trial
        subscription = Subscription(
            employer_id=employer.id,
            plan_id=plan.id,
            provider=provider.value,
            status=SubscriptionStatus.PENDING.value,
            amount=plan.price,
            currency=plan.currency,
            is_trial=used_trial,
            trial_ends_at=now + timedelta(days=plan.trial_days) if used_trial else None,
            created_at=now,
            updated_at=now
        )
        if used_trial:
            employer.has_used_trial = True
        db.add(subscription)
        db.commit()
        return subscription, used_trial

    def _abandon(self, subscription_id: int, employer_id: int, provider: Provider, used_trial: bool) -> None:
        """Expire a pending subscription whose checkout could not be started"""
        event = self._synthetic_event(provider.value, EventKind.SUBSCRIPTION_EXPIRED,
                                      f"abandon_{uuid.uuid4().hex}", "local.create_failed")
        # Effects dropped: the employer never had this subscription
        result, _, _ = self._apply_deferred(subscription_id, event, local=True)
        if result.error:
            logger.error(f"Could not expire abandoned subscription {subscription_id}: {result.reason}")
        if not used_trial:
            return

        db = self.session_factory()
        try:
            employer = db.query(Employer).filter(Employer.id == employer_id).first()
            if employer is not None:
                employer.has_used_trial = False
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not restore trial eligibility for employer {employer_id}: {e}")
        finally:
            db.close()

    def _bind_checkout(self, subscription_id: int, checkout) -> None:
        try:
            with self.locker.hold(subscription_lock_key(subscription_id)):
                db = self.session_factory()
                try:
                    subscription = db.query(Subscription).filter(
                        Subscription.id == subscription_id
                    ).with_for_update().first()
                    if subscription.external_subscription_id is None and checkout.external_subscription_id:
                        subscription.external_subscription_id = checkout.external_subscription_id
                    if checkout.checkout_reference:
                        subscription.checkout_reference = checkout.checkout_reference
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    # Webhooks still find the row through the echoed local id
                    logger.warning(f"Could not store provider references on subscription {subscription_id}: {e}")
                finally:
                    db.close()
        except LockTimeoutError:
            logger.warning(f"Could not store provider references on subscription {subscription_id}: lock busy")

    # ========================================================================
    # PROVIDER SYNC AND SWEEPS
    # ========================================================================

    def sync_with_provider(self, subscription_id: int) -> ApplyResult:
        """Fetch the provider's view of a subscription and apply it as a synthetic event"""
        db = self.session_factory()
        try:
            subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
            if subscription is None:
                return ApplyResult.failure(ErrorKind.NOT_FOUND, "Subscription not found", subscription_id)
            provider = Provider(subscription.provider)
            external_id = subscription.external_subscription_id
            status = SubscriptionStatus(subscription.status)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load subscription {subscription_id}: {e}")
            return ApplyResult.failure(ErrorKind.PERSISTENCE_FAILURE, "Database unavailable", subscription_id)
        finally:
            db.close()

        if not external_id:
            return ApplyResult.failure(
                ErrorKind.INVALID_TRANSITION,
                "Subscription has not been confirmed by the provider yet",
                subscription_id,
                status.value
            )

        try:
            remote = self.providers.get(provider).fetch_subscription(external_id)
        except ProviderCallError as e:
            logger.warning(f"Sync of subscription {subscription_id} failed: {e}")
            return ApplyResult.failure(
                ErrorKind.PROVIDER_CALL_FAILURE, "Payment provider is unavailable", subscription_id, status.value
            )

        kind = normalize_remote_status(provider, remote)
        if kind == EventKind.SUBSCRIPTION_ACTIVATED and status == SubscriptionStatus.SUSPENDED:
            kind = EventKind.SUBSCRIPTION_RESUMED
        elif kind == EventKind.SUBSCRIPTION_ACTIVATED and status == SubscriptionStatus.PAST_DUE:
            kind = EventKind.PAYMENT_SUCCEEDED
        if kind is None:
            return ApplyResult(
                subscription_id=subscription_id,
                new_status=status.value,
                applied=False,
                outcome=EventOutcome.IGNORED_NOOP,
                error=ErrorKind.INVALID_TRANSITION,
                reason=f"provider status {remote.status} requires no change"
            )

        at_period_end = kind == EventKind.SUBSCRIPTION_CANCELLED and (
            remote.cancel_at_period_end or provider == Provider.PAYPAL
        )
        event = self._synthetic_event(
            provider.value,
            kind,
            f"sync:{subscription_id}:{uuid.uuid4().hex}",
            f"sync.{remote.status}",
            external_subscription_id=external_id,
            period_start=remote.period_start,
            period_end=remote.period_end,
            cancel_at_period_end=at_period_end
        )
        return self._apply(subscription_id, event, immediate=kind == EventKind.SUBSCRIPTION_CANCELLED and not at_period_end)

    def expire_overdue(self, now: Optional[datetime] = None) -> List[ApplyResult]:
        """Expire every past_due subscription whose grace period has ended"""
        now = now or self.clock()
        db = self.session_factory()
        try:
            rows = db.query(Subscription.id, Subscription.provider, Subscription.grace_period_ends_at).filter(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.grace_period_ends_at <= now
            ).all()
        finally:
            db.close()

        results = []
        for row in rows:
            grace_end = ensure_utc(row.grace_period_ends_at)
            # Deterministic id: repeated sweeps of the same grace period are duplicates
            event = self._synthetic_event(
                row.provider,
                EventKind.GRACE_EXPIRED,
                f"grace:{row.id}:{int(grace_end.timestamp())}",
                "local.grace_expired",
                occurred_at=now
            )
            results.append(self._apply(row.id, event, local=True, now=now))
        return results

    def subscriptions_with_trial_ending(self, days: int, now: Optional[datetime] = None) -> List[int]:
        """Ids of trialing subscriptions whose trial ends within `days` and were not yet notified"""
        now = now or self.clock()
        db = self.session_factory()
        try:
            rows = db.query(Subscription.id).filter(
                Subscription.status == SubscriptionStatus.TRIALING.value,
                Subscription.trial_ends_at > now,
                Subscription.trial_ends_at <= now + timedelta(days=days),
                Subscription.trial_ending_notified_at.is_(None)
            ).all()
            return [row.id for row in rows]
        finally:
            db.close()

    def notify_trials_ending(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Send one trial-ending notice per subscription. Returns the number sent."""
        days = days if days is not None else settings.TRIAL_ENDING_NOTICE_DAYS
        now = now or self.clock()
        sent = 0
        for subscription_id in self.subscriptions_with_trial_ending(days, now):
            notice = None
            try:
                with self.locker.hold(subscription_lock_key(subscription_id)):
                    db = self.session_factory()
                    try:
                        subscription = db.query(Subscription).filter(
                            Subscription.id == subscription_id
                        ).with_for_update().first()
                        if subscription.status == SubscriptionStatus.TRIALING.value \
                                and subscription.trial_ending_notified_at is None:
                            subscription.trial_ending_notified_at = now
                            notice = self._notice(subscription)
                            db.commit()
                    except SQLAlchemyError as e:
                        db.rollback()
                        logger.error(f"Failed to mark trial notice for subscription {subscription_id}: {e}")
                        notice = None
                    finally:
                        db.close()
            except LockTimeoutError:
                logger.warning(f"Skipping trial notice for subscription {subscription_id}: lock busy")
                continue
            if notice is not None:
                self._notify("trial_ending", notice)
                sent += 1
        return sent

    # ========================================================================
    # CORE APPLY PATH
    # ========================================================================

    def _apply(self, subscription_id: int, event: NormalizedEvent, immediate: bool = False, local: bool = False,
               now: Optional[datetime] = None) -> ApplyResult:
        result, notice, effects = self._apply_deferred(subscription_id, event, immediate, local, now)
        self._dispatch(notice, effects)
        return result

    def _apply_deferred(self, subscription_id: int, event: NormalizedEvent, immediate: bool = False,
                        local: bool = False, now: Optional[datetime] = None) -> Deferred:
        """Lock, transition and commit. Effects are returned for dispatch after the lock is released."""
        try:
            with self.locker.hold(subscription_lock_key(subscription_id)):
                return self._apply_locked(subscription_id, event, immediate, local, now or self.clock())
        except LockTimeoutError as e:
            return ApplyResult.failure(ErrorKind.LOCK_TIMEOUT, str(e), subscription_id), None, ()
        except PersistenceError as e:
            return ApplyResult.failure(ErrorKind.PERSISTENCE_FAILURE, str(e), subscription_id), None, ()

    def _apply_locked(self, subscription_id: int, event: NormalizedEvent, immediate: bool, local: bool,
                      now: datetime) -> Deferred:
        db = self.session_factory()
        try:
            prior = self._find_logged(db, event.provider, event.external_event_id)
            if prior is not None:
                return self._duplicate(prior), None, ()

            subscription = db.query(Subscription).filter(
                Subscription.id == subscription_id
            ).with_for_update().first()
            if subscription is None:
                return ApplyResult.failure(ErrorKind.NOT_FOUND, "Subscription not found", subscription_id), None, ()

            previous_status = subscription.status
            if event.kind == EventKind.PAYMENT_SUCCEEDED and self._payment_recorded(db, event):
                # Stripe reports one charge as both invoice.paid and invoice.payment_succeeded
                step = Transition(
                    next_status=SubscriptionStatus(previous_status),
                    outcome=EventOutcome.IGNORED_NOOP,
                    reason=f"payment {event.transaction_id} already recorded"
                )
            else:
                step = transition(
                    SubscriptionSnapshot.of(subscription),
                    event.kind,
                    event.occurred_at,
                    now,
                    immediate=immediate,
                    local=local,
                    grace_days=self.grace_days,
                    amount=event.amount
                )

            effects = step.effects
            if self._orphaned_at_provider(subscription, event, local):
                # A superseded checkout completed anyway; the provider must stop billing it
                logger.warning(
                    f"Subscription {subscription_id} is {subscription.status} but {event.provider.value} "
                    f"bound {event.external_subscription_id} to it; cancelling at the provider"
                )
                effects = effects + (Effect.PROVIDER_CANCEL_NOW,)

            self._bind_references(subscription, event)
            for column, value in step.changes.items():
                setattr(subscription, column, value)
            if "last_event_at" in step.changes:
                subscription.last_event_id = event.external_event_id
            if step.applied:
                if event.period_start:
                    subscription.current_period_start = event.period_start
                if event.period_end:
                    subscription.current_period_end = event.period_end
                if event.kind == EventKind.PAYMENT_SUCCEEDED and event.amount:
                    subscription.amount = event.amount
                    subscription.currency = event.currency or subscription.currency
            subscription.updated_at = now

            self._record_payment(db, subscription, event)
            self._write_event_log(db, event, subscription.id, step.outcome, step.next_status.value, step.reason)

            reason = event.raw_payload.get("reason") if local else None
            notice = self._notice(subscription, reason=reason) if effects else None
            db.commit()
        except IntegrityError as e:
            db.rollback()
            prior = self._find_logged(db, event.provider, event.external_event_id)
            if prior is not None:
                return self._duplicate(prior), None, ()
            logger.error(f"Integrity error applying {event.external_event_id} to subscription {subscription_id}: {e}")
            raise PersistenceError("Could not persist subscription change") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to persist {event.external_event_id} for subscription {subscription_id}: {e}")
            raise PersistenceError("Could not persist subscription change") from e
        finally:
            db.close()

        webhook_events_counter.labels(
            provider=event.provider.value, kind=event.kind.value, outcome=step.outcome.value
        ).inc()
        if step.applied:
            transitions_counter.labels(from_status=previous_status, to_status=step.next_status.value).inc()
            logger.info(
                f"Subscription {subscription_id}: {previous_status} -> {step.next_status.value} "
                f"on {event.kind.value} ({event.external_event_id})"
            )
        else:
            logger.info(
                f"Subscription {subscription_id}: {event.kind.value} ({event.external_event_id}) "
                f"{step.outcome.value}: {step.reason}"
            )

        result = ApplyResult(
            subscription_id=subscription_id,
            new_status=step.next_status.value,
            applied=step.applied,
            outcome=step.outcome,
            error=OUTCOME_ERRORS[step.outcome],
            reason=step.reason
        )
        return result, notice, effects

    @staticmethod
    def _orphaned_at_provider(subscription: Subscription, event: NormalizedEvent, local: bool) -> bool:
        """True when a provider event attaches a live provider subscription to a row that is already over"""
        return (
            not local
            and bool(event.external_subscription_id)
            and subscription.external_subscription_id is None
            and SubscriptionStatus(subscription.status) in TERMINAL_STATUSES
            and event.kind not in (EventKind.SUBSCRIPTION_CANCELLED, EventKind.SUBSCRIPTION_EXPIRED)
        )

    def _bind_references(self, subscription: Subscription, event: NormalizedEvent) -> None:
        """Store provider identifiers learned from an event"""
        if event.external_subscription_id and subscription.external_subscription_id is None:
            subscription.external_subscription_id = event.external_subscription_id
        if event.checkout_reference and subscription.checkout_reference is None:
            subscription.checkout_reference = event.checkout_reference
        if event.customer_id and event.provider == Provider.STRIPE:
            employer = subscription.employer
            if employer is not None and employer.stripe_customer_id is None:
                employer.stripe_customer_id = event.customer_id

    @staticmethod
    def _payment_recorded(db, event: NormalizedEvent) -> bool:
        if not event.transaction_id or not event.payment_status:
            return False
        return db.query(Payment.id).filter(
            Payment.provider == event.provider.value,
            Payment.provider_transaction_id == event.transaction_id,
            Payment.status == event.payment_status
        ).first() is not None

    def _record_payment(self, db, subscription: Subscription, event: NormalizedEvent) -> None:
        if not event.transaction_id or not event.payment_status:
            return
        if self._payment_recorded(db, event):
            return
        db.add(Payment(
            subscription_id=subscription.id,
            employer_id=subscription.employer_id,
            provider=event.provider.value,
            provider_transaction_id=event.transaction_id,
            amount=event.amount,
            currency=event.currency or subscription.currency,
            status=event.payment_status,
            occurred_at=event.occurred_at,
            created_at=self.clock()
        ))

    def _write_event_log(self, db, event: NormalizedEvent, subscription_id: Optional[int], outcome: EventOutcome,
                         resulting_status: Optional[str], detail: Optional[str]) -> None:
        db.add(WebhookEvent(
            provider=event.provider.value,
            external_event_id=event.external_event_id,
            event_type=event.event_type,
            kind=event.kind.value,
            subscription_id=subscription_id,
            outcome=outcome.value,
            resulting_status=resulting_status,
            detail=detail,
            payload=event.raw_payload or None,
            occurred_at=event.occurred_at,
            created_at=self.clock()
        ))
        db.flush()

    @staticmethod
    def _find_logged(db, provider: Provider, external_event_id: str) -> Optional[WebhookEvent]:
        return db.query(WebhookEvent).filter(
            WebhookEvent.provider == provider.value,
            WebhookEvent.external_event_id == external_event_id
        ).first()

    @staticmethod
    def _duplicate(prior: WebhookEvent) -> ApplyResult:
        return ApplyResult(
            subscription_id=prior.subscription_id,
            new_status=prior.resulting_status,
            applied=False,
            outcome=EventOutcome.IGNORED_DUPLICATE,
            error=ErrorKind.DUPLICATE_EVENT,
            reason=f"event already processed ({prior.outcome})"
        )

    def _synthetic_event(self, provider, kind: EventKind, event_id: str, event_type: str,
                         occurred_at: Optional[datetime] = None, reason: Optional[str] = None,
                         **fields) -> NormalizedEvent:
        payload = {"reason": reason} if reason else {}
        return NormalizedEvent(
            provider=Provider(provider),
            kind=kind,
            external_event_id=event_id,
            occurred_at=occurred_at or self.clock(),
            event_type=event_type,
            raw_payload=payload,
            **fields
        )

    @staticmethod
    def _notice(subscription: Subscription, reason: Optional[str] = None) -> SubscriptionNotice:
        employer = subscription.employer
        plan = subscription.plan
        return SubscriptionNotice(
            subscription_id=subscription.id,
            employer_email=employer.email if employer else "",
            company_name=employer.company_name if employer else "",
            plan_name=plan.name if plan else "",
            provider=subscription.provider,
            status=subscription.status,
            external_subscription_id=subscription.external_subscription_id,
            entitlements_end_at=ensure_utc(subscription.entitlements_end_at),
            grace_period_ends_at=ensure_utc(subscription.grace_period_ends_at),
            trial_ends_at=ensure_utc(subscription.trial_ends_at),
            reason=reason
        )

    # ========================================================================
    # SIDE EFFECTS (run without any lock held)
    # ========================================================================

    def _dispatch(self, notice: Optional[SubscriptionNotice], effects) -> None:
        if notice is None:
            return
        for effect in effects:
            if effect in PROVIDER_EFFECTS:
                self._call_provider(notice, effect)
            else:
                self._notify(effect.value[len("notify_"):], notice)

    def _notify(self, name: str, notice: SubscriptionNotice) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(name, notice)
        except Exception as e:
            logger.error(f"Notification {name} for subscription {notice.subscription_id} failed: {e}")

    def _call_provider(self, notice: SubscriptionNotice, effect: Effect) -> None:
        action, at_period_end = PROVIDER_ACTIONS[effect]
        if not notice.external_subscription_id:
            logger.info(
                f"Subscription {notice.subscription_id} has no {notice.provider} subscription yet; "
                f"skipping provider {action}"
            )
            return

        payload = {"external_subscription_id": notice.external_subscription_id, "reason": notice.reason}
        if at_period_end is not None:
            payload["at_period_end"] = at_period_end
        try:
            run_provider_call(self.providers, notice.provider, action, payload)
            return
        except ProviderCallError as e:
            error = str(e)
            logger.warning(f"Provider {action} for subscription {notice.subscription_id} failed, queueing retry: {e}")

        if self.retry_queue is None:
            operator_logger.error(
                f"Provider {action} for subscription {notice.subscription_id} failed and no retry queue is configured"
            )
            return
        try:
            self.retry_queue.enqueue(notice.subscription_id, notice.provider, action, payload, error=error,
                                     now=self.clock())
        except Exception as e:
            operator_logger.error(
                f"Could not queue provider {action} retry for subscription {notice.subscription_id}: {e}"
            )
