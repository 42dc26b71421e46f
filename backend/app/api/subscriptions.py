"""Subscriptions API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.security import require_employer
from app.db.session import get_db
from app.models.enums import EventOutcome, SubscriptionStatus, TERMINAL_STATUSES
from app.models.payment import Payment
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.schemas.subscriptions import CancelRequest, SubscribeRequest, SubscriptionActionRequest
from app.services.billing.container import get_orchestrator
from app.services.billing.events import CommandAction, LocalCommand
from app.services.billing.results import ApplyResult, ErrorKind, SubscribeResult
from app.services.billing.state_machine import has_entitlements
from app.utils.datetime_utils import ensure_utc, utcnow

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)

# ErrorKind -> HTTP status for employer-initiated actions
ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.STALE_EVENT: 409,
    ErrorKind.DUPLICATE_EVENT: 409,
    ErrorKind.LOCK_TIMEOUT: 503,
    ErrorKind.PERSISTENCE_FAILURE: 503,
    ErrorKind.PROVIDER_CALL_FAILURE: 502,
}

SUCCESS_MESSAGES = {
    CommandAction.CANCEL: "Subscription cancelled",
    CommandAction.SUSPEND: "Subscription suspended",
    CommandAction.RESUME: "Subscription resumed",
}


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def serialize_plan(plan: Plan) -> dict:
    return {
        "id": plan.id,
        "slug": plan.slug,
        "name": plan.name,
        "description": plan.description,
        "price": str(plan.price),
        "currency": plan.currency,
        "billing_interval": plan.billing_interval,
        "trial_days": plan.trial_days,
        "job_posts_limit": plan.job_posts_limit,
        "featured_jobs_limit": plan.featured_jobs_limit,
        "resume_views_limit": plan.resume_views_limit,
        "providers": [p for p, ref in (("stripe", plan.stripe_price_id), ("paypal", plan.paypal_plan_id)) if ref],
    }


def serialize_subscription(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "plan": serialize_plan(subscription.plan) if subscription.plan else None,
        "provider": subscription.provider,
        "status": subscription.status,
        "amount": str(subscription.amount),
        "currency": subscription.currency,
        "is_trial": subscription.is_trial,
        "trial_ends_at": _iso(subscription.trial_ends_at),
        "current_period_start": _iso(subscription.current_period_start),
        "current_period_end": _iso(subscription.current_period_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "entitlements_end_at": _iso(subscription.entitlements_end_at),
        "grace_period_ends_at": _iso(subscription.grace_period_ends_at),
        "has_entitlements": has_entitlements(subscription, utcnow()),
        "created_at": _iso(subscription.created_at),
    }


def serialize_payment(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "provider": payment.provider,
        "provider_transaction_id": payment.provider_transaction_id,
        "amount": str(payment.amount) if payment.amount is not None else None,
        "currency": payment.currency,
        "status": payment.status,
        "occurred_at": _iso(payment.occurred_at),
        "created_at": _iso(payment.created_at),
    }


def _result_response(result: ApplyResult, success_message: str):
    """Structured {success, status, message} response for an orchestrator result"""
    if result.applied:
        return {"success": True, "status": result.new_status, "message": success_message}

    status_code = ERROR_STATUS.get(result.error, 409)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "status": result.new_status, "message": result.reason or "No change"}
    )


def _owned_subscription(subscription_id: int, employer_id: int, db: Session) -> Subscription:
    subscription = db.query(Subscription).filter(
        Subscription.id == subscription_id,
        Subscription.employer_id == employer_id
    ).first()
    if not subscription:
        raise HTTPException(404, "Subscription not found")
    return subscription


@router.get("/plans")
def list_plans(db: Session = Depends(get_db)):
    """List active subscription plans"""
    plans = db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.price).all()
    return {"plans": [serialize_plan(p) for p in plans]}


@router.get("/current")
def get_current_subscription(employer_id: int = Depends(require_employer), db: Session = Depends(get_db)):
    """Get the employer's current subscription.

    That is the newest non-terminal subscription, or a cancelled one whose
    paid period has not ended yet.
    """
    subscriptions = db.query(Subscription).filter(
        Subscription.employer_id == employer_id
    ).order_by(Subscription.id.desc()).all()

    now = utcnow()
    for subscription in subscriptions:
        status = SubscriptionStatus(subscription.status)
        if status not in TERMINAL_STATUSES or has_entitlements(subscription, now):
            return {"subscription": serialize_subscription(subscription)}
    return {"subscription": None}


@router.get("/history")
def get_subscription_history(employer_id: int = Depends(require_employer), db: Session = Depends(get_db)):
    """All of the employer's subscriptions, newest first"""
    subscriptions = db.query(Subscription).filter(
        Subscription.employer_id == employer_id
    ).order_by(Subscription.id.desc()).all()
    return {"subscriptions": [serialize_subscription(s) for s in subscriptions]}


@router.get("/{subscription_id}/payments")
def get_subscription_payments(
    subscription_id: int,
    employer_id: int = Depends(require_employer),
    db: Session = Depends(get_db)
):
    """Payments recorded against one of the employer's subscriptions"""
    _owned_subscription(subscription_id, employer_id, db)
    payments = db.query(Payment).filter(
        Payment.subscription_id == subscription_id
    ).order_by(Payment.occurred_at.desc(), Payment.id.desc()).all()
    return {"payments": [serialize_payment(p) for p in payments]}


@router.post("")
async def subscribe(
    request_data: SubscribeRequest,
    employer_id: int = Depends(require_employer),
    orchestrator=Depends(get_orchestrator)
):
    """Start a subscription and return the provider approval URL"""
    result: SubscribeResult = await run_in_threadpool(
        orchestrator.subscribe, employer_id, request_data.plan_id, request_data.provider
    )
    if not result.ok:
        return JSONResponse(
            status_code=ERROR_STATUS.get(result.error, 409),
            content={"success": False, "status": result.status, "message": result.reason}
        )
    return {
        "success": True,
        "status": result.status,
        "message": "Complete payment to activate your subscription",
        "subscription_id": result.subscription_id,
        "redirect_url": result.redirect_url,
        "superseded": list(result.superseded_ids),
    }


async def _run_command(subscription_id: int, command: LocalCommand, employer_id: int, db: Session, orchestrator):
    _owned_subscription(subscription_id, employer_id, db)
    result = await run_in_threadpool(orchestrator.execute_command, subscription_id, command)
    return _result_response(result, SUCCESS_MESSAGES[command.action])


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: int,
    request_data: CancelRequest = CancelRequest(),
    employer_id: int = Depends(require_employer),
    db: Session = Depends(get_db),
    orchestrator=Depends(get_orchestrator)
):
    """Cancel a subscription at period end, or immediately"""
    command = LocalCommand(CommandAction.CANCEL, immediate=request_data.immediate, reason=request_data.reason)
    return await _run_command(subscription_id, command, employer_id, db, orchestrator)


@router.post("/{subscription_id}/suspend")
async def suspend_subscription(
    subscription_id: int,
    request_data: SubscriptionActionRequest = SubscriptionActionRequest(),
    employer_id: int = Depends(require_employer),
    db: Session = Depends(get_db),
    orchestrator=Depends(get_orchestrator)
):
    """Suspend a subscription (entitlements are revoked until resumed)"""
    command = LocalCommand(CommandAction.SUSPEND, reason=request_data.reason)
    return await _run_command(subscription_id, command, employer_id, db, orchestrator)


@router.post("/{subscription_id}/resume")
async def resume_subscription(
    subscription_id: int,
    request_data: SubscriptionActionRequest = SubscriptionActionRequest(),
    employer_id: int = Depends(require_employer),
    db: Session = Depends(get_db),
    orchestrator=Depends(get_orchestrator)
):
    """Resume a suspended subscription"""
    command = LocalCommand(CommandAction.RESUME, reason=request_data.reason)
    return await _run_command(subscription_id, command, employer_id, db, orchestrator)


@router.post("/{subscription_id}/sync")
async def sync_subscription(
    subscription_id: int,
    employer_id: int = Depends(require_employer),
    db: Session = Depends(get_db),
    orchestrator=Depends(get_orchestrator)
):
    """Refresh a subscription from the provider (for missed webhooks)"""
    _owned_subscription(subscription_id, employer_id, db)
    result = await run_in_threadpool(orchestrator.sync_with_provider, subscription_id)
    if result.outcome == EventOutcome.IGNORED_NOOP:
        # Already in sync
        return {"success": True, "status": result.new_status, "message": result.reason}
    return _result_response(result, "Subscription synchronized")
