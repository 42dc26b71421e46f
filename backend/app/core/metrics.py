"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY


def _register(metric_class, name: str, documentation: str, labelnames=()):
    try:
        return metric_class(name, documentation, labelnames)
    except ValueError:
        # Already registered (module reloaded under test)
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _register(
    Counter,
    'billing_webhook_events_total',
    'Total number of normalized webhook events processed',
    ['provider', 'kind', 'outcome']
)

webhook_rejections_counter = _register(
    Counter,
    'billing_webhook_rejections_total',
    'Total number of webhook deliveries rejected before reaching the state machine',
    ['provider', 'reason']
)

# Reconciliation metrics
lock_timeouts_counter = _register(
    Counter,
    'billing_lock_timeouts_total',
    'Total number of subscription lock acquisitions that timed out'
)

transitions_counter = _register(
    Counter,
    'billing_transitions_total',
    'Total number of applied subscription status transitions',
    ['from_status', 'to_status']
)

# Provider call metrics
provider_call_failures_counter = _register(
    Counter,
    'billing_provider_call_failures_total',
    'Total number of failed outbound provider calls',
    ['provider', 'action', 'final']
)

# Subscription metrics
subscriptions_by_status_gauge = _register(
    Gauge,
    'billing_subscriptions',
    'Current number of subscriptions by provider and status',
    ['provider', 'status']
)


def update_subscriptions_gauge(db):
    """Refresh the subscriptions gauge from the database

    Args:
        db: Database session
    """
    from sqlalchemy import func
    from app.models.subscription import Subscription

    rows = db.query(
        Subscription.provider, Subscription.status, func.count(Subscription.id)
    ).group_by(Subscription.provider, Subscription.status).all()

    subscriptions_by_status_gauge.clear()
    for provider, status, count in rows:
        subscriptions_by_status_gauge.labels(provider=provider, status=status).set(count)
