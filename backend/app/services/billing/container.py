"""Wiring of the billing services from settings

FastAPI endpoints depend on get_orchestrator / get_verifier / get_retry_queue,
so tests replace them through app.dependency_overrides.
"""
from typing import Optional

from app.db.session import SessionLocal
from app.services.billing.locks import RedisLocker
from app.services.billing.notifications import EmailNotifier
from app.services.billing.orchestrator import ReconciliationOrchestrator
from app.services.billing.providers.registry import get_provider_set
from app.services.billing.retry_queue import ProviderCallQueue
from app.services.billing.verifier import WebhookVerifier

# Lazy initialization - nothing connects at import time
_orchestrator: Optional[ReconciliationOrchestrator] = None
_verifier: Optional[WebhookVerifier] = None
_retry_queue: Optional[ProviderCallQueue] = None


def get_retry_queue() -> ProviderCallQueue:
    global _retry_queue
    if _retry_queue is None:
        _retry_queue = ProviderCallQueue(get_provider_set(), SessionLocal)
    return _retry_queue


def get_orchestrator() -> ReconciliationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ReconciliationOrchestrator(
            session_factory=SessionLocal,
            locker=RedisLocker(),
            providers=get_provider_set(),
            notifier=EmailNotifier(),
            retry_queue=get_retry_queue()
        )
    return _orchestrator


def get_verifier() -> WebhookVerifier:
    global _verifier
    if _verifier is None:
        providers = get_provider_set()
        _verifier = WebhookVerifier(paypal=providers.get("paypal"))
    return _verifier
