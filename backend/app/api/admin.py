"""Admin API routes

Operator tooling for billing: inspect the webhook event log and the
provider calls that exhausted their retries, and force reconciliation.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import desc
from sqlalchemy.orm import Session

from app.api.subscriptions import serialize_payment, serialize_subscription
from app.core.security import require_admin_token
from app.db.session import get_db
from app.models.enums import EventOutcome, Provider
from app.models.provider_call_failure import ProviderCallFailure
from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.services.billing.container import get_orchestrator
from app.utils.datetime_utils import ensure_utc

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])
logger = logging.getLogger(__name__)


def _iso(value):
    value = ensure_utc(value)
    return value.isoformat() if value else None


def serialize_event(event: WebhookEvent, include_payload: bool = False) -> dict:
    data = {
        "id": event.id,
        "provider": event.provider,
        "external_event_id": event.external_event_id,
        "event_type": event.event_type,
        "kind": event.kind,
        "subscription_id": event.subscription_id,
        "outcome": event.outcome,
        "resulting_status": event.resulting_status,
        "detail": event.detail,
        "occurred_at": _iso(event.occurred_at),
        "created_at": _iso(event.created_at),
    }
    if include_payload:
        data["payload"] = event.payload
    return data


@router.get("/webhook-events")
def list_webhook_events(
    provider: Optional[Provider] = None,
    outcome: Optional[EventOutcome] = None,
    subscription_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """List logged webhook events, newest first"""
    query = db.query(WebhookEvent)
    if provider:
        query = query.filter(WebhookEvent.provider == provider.value)
    if outcome:
        query = query.filter(WebhookEvent.outcome == outcome.value)
    if subscription_id is not None:
        query = query.filter(WebhookEvent.subscription_id == subscription_id)

    events = query.order_by(desc(WebhookEvent.id)).limit(limit).all()
    return {"events": [serialize_event(e) for e in events]}


@router.get("/webhook-events/{event_id}")
def get_webhook_event(event_id: int, db: Session = Depends(get_db)):
    """Get one logged event including its raw payload"""
    event = db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()
    if not event:
        raise HTTPException(404, "Event not found")
    return serialize_event(event, include_payload=True)


@router.get("/provider-call-failures")
def list_provider_call_failures(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Provider calls that failed permanently and need manual follow-up"""
    failures = db.query(ProviderCallFailure).order_by(desc(ProviderCallFailure.id)).limit(limit).all()
    return {
        "failures": [
            {
                "id": f.id,
                "subscription_id": f.subscription_id,
                "provider": f.provider,
                "action": f.action,
                "attempts": f.attempts,
                "last_error": f.last_error,
                "payload": f.payload,
                "created_at": _iso(f.created_at),
            }
            for f in failures
        ]
    }


@router.get("/subscriptions/{subscription_id}")
def get_subscription(subscription_id: int, db: Session = Depends(get_db)):
    """Subscription with its event and payment history"""
    subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not subscription:
        raise HTTPException(404, "Subscription not found")

    events = db.query(WebhookEvent).filter(
        WebhookEvent.subscription_id == subscription_id
    ).order_by(WebhookEvent.id).all()

    data = serialize_subscription(subscription)
    data["employer_id"] = subscription.employer_id
    data["external_subscription_id"] = subscription.external_subscription_id
    data["events"] = [serialize_event(e) for e in events]
    data["payments"] = [serialize_payment(p) for p in subscription.payments]
    return data


@router.post("/subscriptions/{subscription_id}/sync")
async def sync_subscription(subscription_id: int, orchestrator=Depends(get_orchestrator)):
    """Force a provider sync of one subscription"""
    result = await run_in_threadpool(orchestrator.sync_with_provider, subscription_id)
    logger.info(
        f"Admin sync of subscription {subscription_id}: applied={result.applied}, "
        f"status={result.new_status}, reason={result.reason}"
    )
    return {
        "subscription_id": subscription_id,
        "applied": result.applied,
        "status": result.new_status,
        "error": result.error.value if result.error else None,
        "reason": result.reason,
    }


@router.post("/expire-overdue")
async def expire_overdue(orchestrator=Depends(get_orchestrator)):
    """Run the grace-period sweep now"""
    results = await run_in_threadpool(orchestrator.expire_overdue)
    expired = [r.subscription_id for r in results if r.applied]
    logger.info(f"Admin grace sweep expired {len(expired)} subscription(s)")
    return {"expired": expired, "checked": len(results)}
