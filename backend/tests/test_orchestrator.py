"""Reconciliation orchestrator tests"""
import itertools
import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app.models.enums import ACTIVE_LIKE_STATUSES, EventOutcome, Provider, SubscriptionStatus
from app.models.payment import Payment
from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.services.billing import orchestrator as orchestrator_module
from app.services.billing.events import CommandAction, EventKind, LocalCommand
from app.services.billing.locks import RedisLocker
from app.services.billing.orchestrator import ReconciliationOrchestrator
from app.services.billing.providers.base import RemoteSubscription
from app.services.billing.results import ErrorKind
from app.services.billing.state_machine import has_entitlements
from app.utils.datetime_utils import ensure_utc
from tests.conftest import NOW

S = SubscriptionStatus


def event_log_count(db_session, **filters):
    db_session.expire_all()
    return db_session.query(WebhookEvent).filter_by(**filters).count()


def active_like_count(db_session, employer_id):
    db_session.expire_all()
    return db_session.query(Subscription).filter(
        Subscription.employer_id == employer_id,
        Subscription.status.in_([s.value for s in ACTIVE_LIKE_STATUSES])
    ).count()


@pytest.mark.critical
class TestIdempotency:
    """Test redelivered events are applied once"""

    def test_duplicate_activation_applies_once(self, orchestrator, make_subscription, make_event, reload,
                                               notifier, db_session):
        """Scenario B: the same activation delivered twice"""
        subscription = make_subscription(S.PENDING)
        event = make_event(subscription, EventKind.SUBSCRIPTION_ACTIVATED, "evt_activate")

        first = orchestrator.apply_event(event)
        second = orchestrator.apply_event(event)

        assert first.applied and first.new_status == "active"
        assert not second.applied
        assert second.outcome == EventOutcome.IGNORED_DUPLICATE
        assert second.error == ErrorKind.DUPLICATE_EVENT
        assert second.new_status == "active"
        assert reload(subscription.id).status == "active"
        assert event_log_count(db_session, external_event_id="evt_activate") == 1
        assert notifier.names(subscription.id) == ["activated"]

    def test_duplicate_noop_is_still_duplicate(self, orchestrator, make_subscription, make_event, db_session):
        """Test an ignored event is also recorded and deduplicated"""
        subscription = make_subscription(S.ACTIVE)
        event = make_event(subscription, EventKind.SUBSCRIPTION_RESUMED, "evt_resume")

        first = orchestrator.apply_event(event)
        second = orchestrator.apply_event(event)

        assert first.outcome == EventOutcome.IGNORED_NOOP
        assert second.outcome == EventOutcome.IGNORED_DUPLICATE
        assert event_log_count(db_session, external_event_id="evt_resume") == 1

    def test_payment_recorded_once_across_event_ids(self, orchestrator, make_subscription, make_event, db_session,
                                                    notifier):
        """Test invoice.paid and invoice.payment_succeeded for one invoice record one payment and send one email"""
        subscription = make_subscription(S.ACTIVE)
        results = [
            orchestrator.apply_event(make_event(
                subscription, EventKind.PAYMENT_SUCCEEDED, event_id,
                amount=Decimal("49.00"), currency="USD", transaction_id="in_1", payment_status="succeeded"
            ))
            for event_id in ("evt_paid", "evt_payment_succeeded")
        ]

        db_session.expire_all()
        payments = db_session.query(Payment).filter(Payment.subscription_id == subscription.id).all()
        assert len(payments) == 1
        assert payments[0].amount == Decimal("49.00")
        assert results[0].outcome == EventOutcome.APPLIED
        assert results[1].outcome == EventOutcome.IGNORED_NOOP
        assert notifier.names(subscription.id) == ["payment_succeeded"]
        assert event_log_count(db_session, external_event_id="evt_payment_succeeded", outcome="ignored_noop") == 1

    def test_refund_recorded_without_status_change(self, orchestrator, make_subscription, make_event, reload,
                                                   db_session):
        subscription = make_subscription(S.ACTIVE, provider=Provider.PAYPAL)
        result = orchestrator.apply_event(make_event(
            subscription, EventKind.UNKNOWN, "WH-REFUND",
            amount=Decimal("49.00"), transaction_id="SALE-1", payment_status="refunded"
        ))

        assert result.outcome == EventOutcome.IGNORED_UNKNOWN
        assert reload(subscription.id).status == "active"
        assert db_session.query(Payment).filter(Payment.status == "refunded").count() == 1


@pytest.mark.critical
class TestScenarios:
    """Test end-to-end event sequences"""

    def test_failed_then_recovered_payment(self, orchestrator, make_subscription, make_event, reload, notifier):
        """Scenario A: active -> past_due -> active"""
        subscription = make_subscription(S.ACTIVE)

        failed = orchestrator.apply_event(make_event(subscription, EventKind.PAYMENT_FAILED, "evt_fail", NOW))
        row = reload(subscription.id)
        assert failed.new_status == "past_due"
        assert ensure_utc(row.grace_period_ends_at) == NOW + timedelta(days=7)
        assert has_entitlements(row, NOW)

        recovered = orchestrator.apply_event(
            make_event(subscription, EventKind.PAYMENT_SUCCEEDED, "evt_paid", NOW + timedelta(hours=1))
        )
        row = reload(subscription.id)
        assert recovered.new_status == "active"
        assert row.grace_period_ends_at is None
        assert row.last_event_id == "evt_paid"
        assert notifier.names(subscription.id) == ["payment_failed", "payment_succeeded"]

    def test_late_older_event_ignored(self, orchestrator, make_subscription, make_event, reload):
        """Scenario C: an event older than the last applied one arrives late"""
        subscription = make_subscription(S.ACTIVE)

        orchestrator.apply_event(make_event(subscription, EventKind.PAYMENT_FAILED, "evt_t", NOW))
        late = orchestrator.apply_event(
            make_event(subscription, EventKind.PAYMENT_SUCCEEDED, "evt_t_minus_5", NOW - timedelta(seconds=5))
        )

        assert late.outcome == EventOutcome.IGNORED_STALE
        assert late.error == ErrorKind.STALE_EVENT
        row = reload(subscription.id)
        assert row.status == "past_due"
        assert ensure_utc(row.last_event_at) == NOW
        assert row.last_event_id == "evt_t"

    def test_out_of_order_delivery_matches_timestamp_order(self, orchestrator, make_subscription, make_event,
                                                           reload):
        """Test every delivery order converges on the timestamp-ordered result"""
        events = [
            (EventKind.PAYMENT_FAILED, NOW),
            (EventKind.PAYMENT_SUCCEEDED, NOW + timedelta(minutes=1)),
            (EventKind.SUBSCRIPTION_SUSPENDED, NOW + timedelta(minutes=2)),
        ]

        def replay(order):
            subscription = make_subscription(S.ACTIVE)
            for index in order:
                kind, occurred_at = events[index]
                orchestrator.apply_event(make_event(subscription, kind, f"evt_{index}_{subscription.id}", occurred_at))
            return reload(subscription.id).status

        expected = replay((0, 1, 2))
        assert expected == "suspended"
        for order in itertools.permutations(range(3)):
            assert replay(order) == expected, f"delivery order {order}"

    def test_cancel_during_payment_processing(self, orchestrator, make_subscription, make_event, reload,
                                              monkeypatch, db_session):
        """Scenario D: an employer cancel waits for an in-flight payment webhook"""
        subscription = make_subscription(S.ACTIVE)
        entered = threading.Event()
        original_transition = orchestrator_module.transition

        def slow_transition(snapshot, kind, *args, **kwargs):
            if kind == EventKind.PAYMENT_SUCCEEDED:
                entered.set()
                time.sleep(0.3)
            return original_transition(snapshot, kind, *args, **kwargs)

        monkeypatch.setattr(orchestrator_module, "transition", slow_transition)
        results = {}

        def deliver_payment():
            results["payment"] = orchestrator.apply_event(make_event(
                subscription, EventKind.PAYMENT_SUCCEEDED, "evt_renewal", NOW - timedelta(minutes=1),
                amount=Decimal("59.00"), currency="USD", transaction_id="in_renewal", payment_status="succeeded"
            ))

        def cancel():
            results["cancel"] = orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.CANCEL))

        webhook_thread = threading.Thread(target=deliver_payment)
        webhook_thread.start()
        assert entered.wait(timeout=5)
        cancel_thread = threading.Thread(target=cancel)
        cancel_thread.start()
        webhook_thread.join(timeout=10)
        cancel_thread.join(timeout=10)

        assert results["payment"].applied
        assert results["cancel"].applied
        row = reload(subscription.id)
        # The renewal is not lost and the cancellation is applied on top of it
        assert row.status == "cancelled"
        assert row.cancel_at_period_end is True
        assert row.amount == Decimal("59.00")
        assert db_session.query(Payment).filter(Payment.provider_transaction_id == "in_renewal").count() == 1
        assert event_log_count(db_session, subscription_id=subscription.id) == 2


@pytest.mark.critical
class TestAtomicity:
    """Test nothing partial is persisted"""

    def test_event_log_failure_rolls_back_everything(self, orchestrator, make_subscription, make_event, reload,
                                                     notifier, monkeypatch, db_session):
        """Test a failure writing the event log leaves the pre-transition state"""
        subscription = make_subscription(S.ACTIVE)
        event = make_event(
            subscription, EventKind.PAYMENT_FAILED, "evt_fail",
            amount=Decimal("49.00"), transaction_id="in_1:1", payment_status="failed"
        )

        def broken_write(self, *args, **kwargs):
            raise OperationalError("INSERT INTO webhook_events", {}, Exception("disk I/O error"))

        monkeypatch.setattr(ReconciliationOrchestrator, "_write_event_log", broken_write)
        result = orchestrator.apply_event(event)

        assert not result.applied
        assert result.error == ErrorKind.PERSISTENCE_FAILURE
        row = reload(subscription.id)
        assert row.status == "active"
        assert row.grace_period_ends_at is None
        assert row.last_event_id is None
        assert db_session.query(Payment).count() == 0
        assert event_log_count(db_session) == 0
        assert notifier.sent == []

        # The provider redelivers once storage recovers
        monkeypatch.undo()
        retried = orchestrator.apply_event(event)
        assert retried.applied
        assert reload(subscription.id).status == "past_due"


@pytest.mark.high
class TestLocking:
    """Test lock timeouts"""

    def test_lock_timeout_changes_nothing(self, session_factory, providers, notifier, mock_redis, clock,
                                          make_subscription, make_event, reload, db_session):
        subscription = make_subscription(S.ACTIVE)
        impatient = ReconciliationOrchestrator(
            session_factory, RedisLocker(client=mock_redis, ttl=30, wait=0.1), providers, notifier, clock=clock
        )
        mock_redis.set(f"lock:subscription:{subscription.id}", "someone-else", ex=30)

        result = impatient.apply_event(make_event(subscription, EventKind.PAYMENT_FAILED, "evt_fail"))

        assert result.error == ErrorKind.LOCK_TIMEOUT
        assert not result.ok
        assert reload(subscription.id).status == "active"
        # Not logged, so the provider's retry is processed normally
        assert event_log_count(db_session, external_event_id="evt_fail") == 0

    def test_lock_released_after_apply(self, orchestrator, make_subscription, make_event, mock_redis):
        subscription = make_subscription(S.ACTIVE)
        orchestrator.apply_event(make_event(subscription, EventKind.PAYMENT_FAILED, "evt_fail"))

        assert mock_redis.get(f"lock:subscription:{subscription.id}") is None


@pytest.mark.high
class TestResolution:
    """Test how events find their subscription"""

    def test_bind_by_local_reference(self, orchestrator, make_subscription, make_event, reload):
        """Test the echoed local id binds a subscription the provider just created"""
        subscription = make_subscription(S.PENDING, external_subscription_id=None)
        result = orchestrator.apply_event(make_event(
            subscription, EventKind.SUBSCRIPTION_ACTIVATED, "evt_checkout",
            external_subscription_id="sub_new", subscription_ref=subscription.id
        ))

        assert result.applied
        assert reload(subscription.id).external_subscription_id == "sub_new"

    def test_bind_by_checkout_reference(self, orchestrator, make_subscription, make_event, reload):
        subscription = make_subscription(S.PENDING, external_subscription_id=None, checkout_reference="cs_42")
        result = orchestrator.apply_event(make_event(
            subscription, EventKind.SUBSCRIPTION_ACTIVATED, "evt_checkout",
            external_subscription_id="sub_42", checkout_reference="cs_42"
        ))

        assert result.subscription_id == subscription.id
        assert reload(subscription.id).external_subscription_id == "sub_42"

    def test_stripe_customer_bound_to_employer(self, orchestrator, make_subscription, make_event, employer,
                                               db_session):
        subscription = make_subscription(S.PENDING)
        orchestrator.apply_event(make_event(
            subscription, EventKind.SUBSCRIPTION_ACTIVATED, "evt_checkout", customer_id="cus_123"
        ))

        db_session.expire_all()
        assert employer.stripe_customer_id == "cus_123"

    def test_unknown_subscription_is_logged(self, orchestrator, make_subscription, make_event, db_session):
        """Test events for unknown subscriptions are acknowledged and logged"""
        subscription = make_subscription(S.ACTIVE)
        event = make_event(subscription, EventKind.PAYMENT_FAILED, "evt_orphan", external_subscription_id="sub_gone")

        first = orchestrator.apply_event(event)
        second = orchestrator.apply_event(event)

        assert first.outcome == EventOutcome.IGNORED_UNKNOWN_SUBSCRIPTION
        assert first.error == ErrorKind.UNKNOWN_SUBSCRIPTION
        assert first.ok
        assert second.outcome == EventOutcome.IGNORED_DUPLICATE
        assert event_log_count(db_session, external_event_id="evt_orphan", subscription_id=None) == 1


@pytest.mark.critical
class TestSubscribe:
    """Test starting subscriptions"""

    def test_subscribe_creates_pending(self, orchestrator, employer, plan, stripe_provider, reload):
        result = orchestrator.subscribe(employer.id, plan.id, Provider.STRIPE)

        assert result.ok
        assert result.status == "pending"
        assert result.redirect_url == f"https://pay.example/stripe/{result.subscription_id}"
        row = reload(result.subscription_id)
        assert row.status == "pending"
        assert row.external_subscription_id == f"stripe_sub_{row.id}"
        assert row.checkout_reference == f"cs_{row.id}"
        assert row.amount == Decimal("49.00")
        assert stripe_provider.calls == [("create", row.id)]

    def test_subscribe_supersedes_previous(self, orchestrator, employer, plan, make_subscription, reload,
                                           stripe_provider, notifier, db_session):
        """Test switching plans supersedes the current subscription"""
        old = make_subscription(S.ACTIVE)

        result = orchestrator.subscribe(employer.id, plan.id, Provider.STRIPE)

        assert result.superseded_ids == (old.id,)
        old_row = reload(old.id)
        assert old_row.status == "superseded"
        assert not has_entitlements(old_row, NOW)
        assert ("cancel", old.external_subscription_id, False) in stripe_provider.calls
        assert "superseded" in notifier.names(old.id)
        assert active_like_count(db_session, employer.id) == 0

    def test_never_two_active_subscriptions(self, orchestrator, employer, plan, make_event, reload, db_session):
        """Test repeated subscribe + activate never leaves two active-like subscriptions"""
        for attempt, provider in enumerate([Provider.STRIPE, Provider.PAYPAL, Provider.STRIPE]):
            result = orchestrator.subscribe(employer.id, plan.id, provider)
            assert active_like_count(db_session, employer.id) <= 1
            subscription = reload(result.subscription_id)
            orchestrator.apply_event(make_event(subscription, EventKind.SUBSCRIPTION_ACTIVATED, f"evt_{attempt}"))
            assert active_like_count(db_session, employer.id) == 1

    def test_subscription_of_superseded_ignores_late_activation(self, orchestrator, employer, plan,
                                                                 make_subscription, make_event, reload,
                                                                 db_session):
        """Test a late activation of a replaced checkout cannot revive it"""
        old = make_subscription(S.PENDING)
        orchestrator.subscribe(employer.id, plan.id, Provider.STRIPE)

        late = orchestrator.apply_event(make_event(old, EventKind.SUBSCRIPTION_ACTIVATED, "evt_late"))

        assert not late.applied
        assert reload(old.id).status == "superseded"
        assert active_like_count(db_session, employer.id) == 0

    def test_late_checkout_of_superseded_cancelled_at_provider(self, orchestrator, employer, plan, stripe_provider,
                                                               make_subscription, make_event, reload, notifier):
        """Test a replaced checkout completed later is cancelled at the provider instead of billing on"""
        old = make_subscription(S.PENDING, external_subscription_id=None, checkout_reference="cs_old")
        orchestrator.subscribe(employer.id, plan.id, Provider.STRIPE)

        late = orchestrator.apply_event(make_event(
            old, EventKind.SUBSCRIPTION_ACTIVATED, "evt_late_checkout",
            external_subscription_id="sub_zombie", subscription_ref=old.id
        ))

        row = reload(old.id)
        assert not late.applied
        assert row.status == "superseded"
        assert row.external_subscription_id == "sub_zombie"
        assert ("cancel", "sub_zombie", False) in stripe_provider.calls
        assert "activated" not in notifier.names(old.id)

    def test_cancellation_of_superseded_not_cancelled_again(self, orchestrator, employer, plan, stripe_provider,
                                                            make_subscription, make_event):
        old = make_subscription(S.PENDING, external_subscription_id=None)
        orchestrator.subscribe(employer.id, plan.id, Provider.STRIPE)

        orchestrator.apply_event(make_event(
            old, EventKind.SUBSCRIPTION_CANCELLED, "evt_gone",
            external_subscription_id="sub_gone", subscription_ref=old.id
        ))

        assert not [call for call in stripe_provider.calls if call[0] == "cancel"]

    def test_trial_granted_once(self, orchestrator, employer, trial_plan, reload, db_session):
        first = orchestrator.subscribe(employer.id, trial_plan.id, Provider.STRIPE)
        second = orchestrator.subscribe(employer.id, trial_plan.id, Provider.STRIPE)

        first_row = reload(first.subscription_id)
        assert first_row.is_trial is True
        assert ensure_utc(first_row.trial_ends_at) == NOW + timedelta(days=14)
        assert reload(second.subscription_id).is_trial is False
        db_session.expire_all()
        assert employer.has_used_trial is True

    def test_provider_failure_expires_pending(self, orchestrator, employer, trial_plan, stripe_provider, reload,
                                              notifier, db_session):
        """Test a failed checkout leaves no pending subscription and keeps trial eligibility"""
        stripe_provider.fail = True

        result = orchestrator.subscribe(employer.id, trial_plan.id, Provider.STRIPE)

        assert not result.ok
        assert result.error == ErrorKind.PROVIDER_CALL_FAILURE
        assert result.status == "expired"
        assert reload(result.subscription_id).status == "expired"
        db_session.expire_all()
        assert employer.has_used_trial is False
        assert notifier.sent == []

    def test_unknown_plan(self, orchestrator, employer):
        result = orchestrator.subscribe(employer.id, 9999, Provider.STRIPE)

        assert result.error == ErrorKind.NOT_FOUND

    def test_employer_lock_busy(self, orchestrator, employer, plan, mock_redis, session_factory, providers, clock):
        busy = ReconciliationOrchestrator(
            session_factory, RedisLocker(client=mock_redis, ttl=30, wait=0.1), providers, clock=clock
        )
        mock_redis.set(f"lock:employer:{employer.id}", "someone-else", ex=30)

        result = busy.subscribe(employer.id, plan.id, Provider.STRIPE)

        assert result.error == ErrorKind.LOCK_TIMEOUT


@pytest.mark.high
class TestCommands:
    """Test employer commands"""

    def test_cancel_at_period_end(self, orchestrator, make_subscription, reload, stripe_provider):
        subscription = make_subscription(S.ACTIVE)

        result = orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.CANCEL, reason="Hiring freeze"))

        assert result.applied
        row = reload(subscription.id)
        assert row.status == "cancelled"
        assert row.cancel_requested is True
        assert ensure_utc(row.entitlements_end_at) == NOW + timedelta(days=20)
        assert has_entitlements(row, NOW)
        assert stripe_provider.calls == [("cancel", subscription.external_subscription_id, True)]

    def test_immediate_cancel(self, orchestrator, make_subscription, reload, stripe_provider):
        subscription = make_subscription(S.ACTIVE)

        orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.CANCEL, immediate=True))

        row = reload(subscription.id)
        assert row.entitlements_end_at is None
        assert not has_entitlements(row, NOW)
        assert stripe_provider.calls == [("cancel", subscription.external_subscription_id, False)]

    def test_suspend_and_resume(self, orchestrator, make_subscription, reload, paypal_provider, notifier):
        subscription = make_subscription(S.ACTIVE, provider=Provider.PAYPAL)

        suspended = orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.SUSPEND))
        resumed = orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.RESUME))

        assert suspended.new_status == "suspended"
        assert resumed.new_status == "active"
        assert reload(subscription.id).suspended_at is None
        ext = subscription.external_subscription_id
        assert paypal_provider.calls == [("suspend", ext), ("resume", ext)]
        assert notifier.names(subscription.id) == ["suspended", "resumed"]

    def test_invalid_command(self, orchestrator, make_subscription, paypal_provider):
        subscription = make_subscription(S.ACTIVE, provider=Provider.PAYPAL)

        result = orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.RESUME))

        assert not result.applied
        assert result.error == ErrorKind.INVALID_TRANSITION
        assert paypal_provider.calls == []

    def test_unknown_subscription(self, orchestrator):
        result = orchestrator.execute_command(9999, LocalCommand(CommandAction.CANCEL))

        assert result.error == ErrorKind.NOT_FOUND

    def test_provider_failure_is_queued(self, orchestrator, make_subscription, reload, stripe_provider, mock_redis):
        """Test a failed provider call keeps the local change and queues a retry"""
        subscription = make_subscription(S.ACTIVE)
        stripe_provider.fail = True

        result = orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.CANCEL))

        assert result.applied
        assert reload(subscription.id).status == "cancelled"
        assert mock_redis.zcard("task:delayed:provider_call") == 1

    def test_notification_failure_does_not_fail_command(self, orchestrator, make_subscription, reload, notifier):
        def broken_notify(name, notice):
            raise RuntimeError("smtp down")

        notifier.notify = broken_notify
        subscription = make_subscription(S.ACTIVE)

        result = orchestrator.execute_command(subscription.id, LocalCommand(CommandAction.SUSPEND))

        assert result.applied
        assert reload(subscription.id).status == "suspended"


@pytest.mark.high
class TestSweeps:
    """Test the grace sweep and trial notices"""

    def test_expire_overdue(self, orchestrator, make_subscription, reload, notifier):
        overdue = make_subscription(S.PAST_DUE, grace_period_ends_at=NOW - timedelta(hours=1))
        running = make_subscription(S.PAST_DUE, grace_period_ends_at=NOW + timedelta(days=2))

        results = orchestrator.expire_overdue()

        assert [r.subscription_id for r in results if r.applied] == [overdue.id]
        assert reload(overdue.id).status == "expired"
        assert reload(running.id).status == "past_due"
        assert notifier.names(overdue.id) == ["expired"]
        assert orchestrator.expire_overdue() == []

    def test_trial_ending_notice_sent_once(self, orchestrator, make_subscription, notifier):
        trialing = make_subscription(S.TRIALING, is_trial=True, trial_ends_at=NOW + timedelta(days=2))
        make_subscription(S.TRIALING, is_trial=True, trial_ends_at=NOW + timedelta(days=10))

        assert orchestrator.notify_trials_ending(days=3) == 1
        assert orchestrator.notify_trials_ending(days=3) == 0
        assert notifier.sent == [("trial_ending", trialing.id)]


@pytest.mark.medium
class TestSync:
    """Test provider sync"""

    def test_sync_applies_remote_status(self, orchestrator, make_subscription, stripe_provider, reload):
        subscription = make_subscription(S.ACTIVE)
        stripe_provider.remote = RemoteSubscription(subscription.external_subscription_id, "past_due")

        result = orchestrator.sync_with_provider(subscription.id)

        assert result.applied
        assert reload(subscription.id).status == "past_due"

    def test_sync_resumes_suspended(self, orchestrator, make_subscription, stripe_provider, reload):
        subscription = make_subscription(S.SUSPENDED)
        stripe_provider.remote = RemoteSubscription(subscription.external_subscription_id, "active")

        result = orchestrator.sync_with_provider(subscription.id)

        assert result.new_status == "active"

    def test_sync_in_sync(self, orchestrator, make_subscription):
        subscription = make_subscription(S.ACTIVE)

        result = orchestrator.sync_with_provider(subscription.id)

        assert not result.applied
        assert result.outcome == EventOutcome.IGNORED_NOOP

    def test_sync_provider_unavailable(self, orchestrator, make_subscription, stripe_provider, reload):
        subscription = make_subscription(S.ACTIVE)
        stripe_provider.fail = True

        result = orchestrator.sync_with_provider(subscription.id)

        assert result.error == ErrorKind.PROVIDER_CALL_FAILURE
        assert reload(subscription.id).status == "active"

    def test_sync_unconfirmed_subscription(self, orchestrator, make_subscription):
        subscription = make_subscription(S.PENDING, external_subscription_id=None)

        result = orchestrator.sync_with_provider(subscription.id)

        assert result.error == ErrorKind.INVALID_TRANSITION
