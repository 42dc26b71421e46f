"""Shared pytest fixtures for test suite"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import patch
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
import fakeredis

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.db.session import get_db
from app.db import redis as redis_module
from app.db.redis import set_session
from app.models import Base
from app.models.employer import Employer
from app.models.enums import Provider, SubscriptionStatus
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.services.billing.container import get_orchestrator, get_verifier
from app.services.billing.events import EventKind, NormalizedEvent
from app.services.billing.locks import RedisLocker
from app.services.billing.orchestrator import ReconciliationOrchestrator
from app.services.billing.providers.base import PaymentProvider, ProviderCheckout, RemoteSubscription
from app.services.billing.providers.registry import ProviderSet
from app.services.billing.results import ProviderCallError
from app.services.billing.retry_queue import ProviderCallQueue
from app.services.billing.verifier import WebhookVerifier


STRIPE_WEBHOOK_SECRET = "whsec_test_secret"

# Fixed point in time used by the orchestrator clock
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeProvider(PaymentProvider):
    """In-memory provider that records every call"""

    def __init__(self, provider: Provider):
        self.provider = provider
        self.calls = []
        self.fail = False
        self.remote = None

    def _record(self, action, *args):
        self.calls.append((action,) + args)
        if self.fail:
            raise ProviderCallError(f"{self.provider.value} unavailable", provider=self.provider.value, action=action)

    def create_subscription(self, subscription, plan, employer):
        self._record("create", subscription.id)
        return ProviderCheckout(
            redirect_url=f"https://pay.example/{self.provider.value}/{subscription.id}",
            external_subscription_id=f"{self.provider.value}_sub_{subscription.id}",
            checkout_reference=f"cs_{subscription.id}",
        )

    def cancel_subscription(self, external_id, at_period_end=True, reason=None):
        self._record("cancel", external_id, at_period_end)

    def suspend_subscription(self, external_id, reason=None):
        self._record("suspend", external_id)

    def resume_subscription(self, external_id, reason=None):
        self._record("resume", external_id)

    def fetch_subscription(self, external_id):
        self._record("fetch", external_id)
        return self.remote or RemoteSubscription(external_subscription_id=external_id, status="active")


class RecordingNotifier:
    """Collects notifications instead of sending email"""

    def __init__(self):
        self.sent = []

    def notify(self, name, notice):
        self.sent.append((name, notice.subscription_id))
        return True

    def names(self, subscription_id=None):
        return [n for n, sid in self.sent if subscription_id is None or sid == subscription_id]


class Clock:
    """Settable clock for the orchestrator"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """File-backed SQLite so separate sessions and worker threads see committed data"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for arranging and inspecting test data"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def mock_redis():
    """Shared Redis client replaced by fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def clock():
    return Clock(NOW)


@pytest.fixture(scope="function")
def stripe_provider():
    return FakeProvider(Provider.STRIPE)


@pytest.fixture(scope="function")
def paypal_provider():
    return FakeProvider(Provider.PAYPAL)


@pytest.fixture(scope="function")
def providers(stripe_provider, paypal_provider):
    return ProviderSet([stripe_provider, paypal_provider])


@pytest.fixture(scope="function")
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope="function")
def retry_queue(providers, session_factory, mock_redis):
    return ProviderCallQueue(
        providers, session_factory, client=mock_redis, max_retries=2, backoff_base=10, backoff_max=60
    )


@pytest.fixture(scope="function")
def locker(mock_redis):
    return RedisLocker(client=mock_redis, ttl=30, wait=2)


@pytest.fixture(scope="function")
def orchestrator(session_factory, locker, providers, notifier, retry_queue, clock):
    return ReconciliationOrchestrator(
        session_factory=session_factory,
        locker=locker,
        providers=providers,
        notifier=notifier,
        retry_queue=retry_queue,
        clock=clock,
        grace_days=7
    )


@pytest.fixture(scope="function")
def employer(db_session: Session) -> Employer:
    employer = Employer(company_name="Acme Hiring", email="billing@acme.test")
    db_session.add(employer)
    db_session.commit()
    db_session.refresh(employer)
    return employer


@pytest.fixture(scope="function")
def other_employer(db_session: Session) -> Employer:
    employer = Employer(company_name="Globex", email="billing@globex.test")
    db_session.add(employer)
    db_session.commit()
    db_session.refresh(employer)
    return employer


@pytest.fixture(scope="function")
def plan(db_session: Session) -> Plan:
    plan = Plan(
        slug="standard",
        name="Standard",
        price=Decimal("49.00"),
        currency="USD",
        trial_days=0,
        job_posts_limit=10,
        stripe_price_id="price_standard",
        paypal_plan_id="P-STANDARD",
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture(scope="function")
def trial_plan(db_session: Session) -> Plan:
    plan = Plan(
        slug="premium",
        name="Premium",
        price=Decimal("99.00"),
        currency="USD",
        trial_days=14,
        stripe_price_id="price_premium",
        paypal_plan_id="P-PREMIUM",
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture(scope="function")
def make_subscription(db_session: Session, employer: Employer, plan: Plan):
    """Factory for subscriptions in a given status"""
    counter = {"n": 0}

    def _make(status=SubscriptionStatus.ACTIVE, provider=Provider.STRIPE, owner=None, **fields):
        counter["n"] += 1
        values = {
            "employer_id": (owner or employer).id,
            "plan_id": plan.id,
            "provider": provider.value,
            "status": status.value,
            "amount": plan.price,
            "currency": plan.currency,
            "external_subscription_id": f"{provider.value}_ext_{counter['n']}",
            "current_period_start": NOW - timedelta(days=10),
            "current_period_end": NOW + timedelta(days=20),
        }
        values.update(fields)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture(scope="function")
def make_event():
    """Factory for normalized provider events targeting a subscription"""

    def _make(subscription, kind: EventKind, event_id: str, occurred_at: datetime = NOW, **fields):
        values = {
            "provider": Provider(subscription.provider),
            "kind": kind,
            "external_event_id": event_id,
            "occurred_at": occurred_at,
            "event_type": f"test.{kind.value}",
            "external_subscription_id": subscription.external_subscription_id,
        }
        values.update(fields)
        return NormalizedEvent(**values)

    return _make


@pytest.fixture(scope="function")
def reload(db_session: Session):
    """Re-read a subscription from the database"""

    def _reload(subscription_id: int) -> Subscription:
        db_session.expire_all()
        return db_session.query(Subscription).filter(Subscription.id == subscription_id).one()

    return _reload


@pytest.fixture(scope="function")
def client(session_factory, orchestrator, paypal_provider, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client wired to the test database, fakeredis and fake providers"""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    paypal_provider.verify_webhook_signature = lambda headers, event: True
    verifier = WebhookVerifier(
        stripe_secret=STRIPE_WEBHOOK_SECRET,
        stripe_tolerance=300,
        paypal=paypal_provider,
        paypal_verify=True,
        production=False
    )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_verifier] = lambda: verifier
    try:
        # No lifespan: tables come from db_engine and background tasks stay off
        yield TestClient(app)
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def employer_client(client: TestClient, employer: Employer, mock_redis) -> TestClient:
    """Client carrying a session cookie for `employer`"""
    set_session("test-session", employer.id)
    client.cookies.set("session_id", "test-session")
    return client
