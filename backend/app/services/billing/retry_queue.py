"""Retries of failed outbound provider calls

Local state is committed before provider calls run, so a failed call never
rolls anything back. It is retried from the Redis delayed queue with
exponential backoff; once retries are exhausted it is written to the
provider_call_failures table for an operator.

A retry only runs while the local subscription still wants its outcome: a
suspend queued before a successful resume must not pause the provider again.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.logging import operator_logger
from app.core.metrics import provider_call_failures_counter
from app.db.task_queue import backoff_delay, claim_due_tasks, enqueue_task, mark_task_completed, mark_task_failed
from app.models.enums import ACTIVE_LIKE_STATUSES, SubscriptionStatus, TERMINAL_STATUSES
from app.models.provider_call_failure import ProviderCallFailure
from app.models.subscription import Subscription
from app.services.billing.results import ProviderCallError

logger = logging.getLogger(__name__)

TASK_TYPE = "provider_call"

# Local statuses under which a queued provider action still matches local intent
ACTION_STATUSES = {
    "cancel": TERMINAL_STATUSES,
    "suspend": frozenset({SubscriptionStatus.SUSPENDED}),
    "resume": ACTIVE_LIKE_STATUSES,
}


def run_provider_call(providers, provider: str, action: str, payload: Dict[str, Any]) -> None:
    """Execute one provider call described by (provider, action, payload)

    Raises:
        ProviderCallError: On any provider failure
    """
    adapter = providers.get(provider)
    external_id = payload["external_subscription_id"]
    reason = payload.get("reason")
    if action == "cancel":
        adapter.cancel_subscription(external_id, at_period_end=payload.get("at_period_end", True), reason=reason)
    elif action == "suspend":
        adapter.suspend_subscription(external_id, reason=reason)
    elif action == "resume":
        adapter.resume_subscription(external_id, reason=reason)
    else:
        raise ValueError(f"Unknown provider action {action}")


class ProviderCallQueue:
    """Schedules and executes provider call retries

    Args:
        providers: ProviderSet used to execute calls
        session_factory: Creates database sessions for the status check and the failure log
        client: Redis client (defaults to the shared client)
    """

    def __init__(
        self,
        providers,
        session_factory,
        client=None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[int] = None,
        backoff_max: Optional[int] = None
    ):
        self.providers = providers
        self.session_factory = session_factory
        self.client = client
        self.max_retries = max_retries if max_retries is not None else settings.PROVIDER_CALL_MAX_RETRIES
        self.backoff_base = backoff_base if backoff_base is not None else settings.PROVIDER_CALL_BACKOFF_BASE
        self.backoff_max = backoff_max if backoff_max is not None else settings.PROVIDER_CALL_BACKOFF_MAX

    def enqueue(self, subscription_id: int, provider: str, action: str, payload: Dict[str, Any],
                error: Optional[str] = None, now: Optional[datetime] = None) -> str:
        """Schedule a call that just failed inline for its first retry"""
        provider_call_failures_counter.labels(provider=provider, action=action, final="false").inc()
        return enqueue_task(
            TASK_TYPE,
            {"subscription_id": subscription_id, "provider": provider, "action": action, "payload": payload},
            retry_count=0,
            max_retries=self.max_retries,
            delay_seconds=backoff_delay(0, self.backoff_base, self.backoff_max),
            last_error=error,
            now=now,
            client=self.client
        )

    def process_due(self, now: datetime, limit: int = 50) -> List[str]:
        """Run every retry whose backoff has elapsed.

        Returns:
            Ids of the tasks that succeeded
        """
        succeeded = []
        for task in claim_due_tasks(TASK_TYPE, now, limit=limit, client=self.client):
            task_id = task["task_id"]
            call = task["payload"]
            try:
                current = self._local_status(call["subscription_id"])
            except SQLAlchemyError as e:
                self._handle_failure(task, f"could not read subscription status: {e}", now)
                continue
            if current is not None and current not in ACTION_STATUSES.get(call["action"], ()):
                logger.info(
                    f"Dropping queued {call['provider']}.{call['action']} for subscription "
                    f"{call['subscription_id']}: subscription is now {current.value}"
                )
                mark_task_completed(task_id, status="skipped", client=self.client)
                continue

            try:
                run_provider_call(self.providers, call["provider"], call["action"], call["payload"])
            except ProviderCallError as e:
                self._handle_failure(task, str(e), now)
                continue
            mark_task_completed(task_id, client=self.client)
            logger.info(
                f"Provider call {call['provider']}.{call['action']} for subscription "
                f"{call['subscription_id']} succeeded on retry {task['retry_count'] + 1}"
            )
            succeeded.append(task_id)
        return succeeded

    def _local_status(self, subscription_id: Optional[int]) -> Optional[SubscriptionStatus]:
        """Current local status, or None when there is no row to compare against"""
        if subscription_id is None:
            return None
        db = self.session_factory()
        try:
            status = db.query(Subscription.status).filter(Subscription.id == subscription_id).scalar()
        finally:
            db.close()
        return SubscriptionStatus(status) if status else None

    def _handle_failure(self, task: Dict[str, Any], error: str, now: datetime) -> None:
        call = task["payload"]
        retry_id = mark_task_failed(
            task["task_id"], error, self.backoff_base, self.backoff_max, now=now, client=self.client
        )
        if retry_id is not None:
            provider_call_failures_counter.labels(
                provider=call["provider"], action=call["action"], final="false"
            ).inc()
            return

        provider_call_failures_counter.labels(provider=call["provider"], action=call["action"], final="true").inc()
        # Inline attempt plus every queued attempt
        attempts = task["retry_count"] + 2
        operator_logger.error(
            f"Provider call {call['provider']}.{call['action']} for subscription {call['subscription_id']} "
            f"failed permanently after {attempts} attempts: {error}"
        )
        self.record_failure(call["subscription_id"], call["provider"], call["action"], attempts, error, call["payload"])

    def record_failure(self, subscription_id: int, provider: str, action: str, attempts: int, error: str,
                       payload: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            db.add(ProviderCallFailure(
                subscription_id=subscription_id,
                provider=provider,
                action=action,
                attempts=attempts,
                last_error=error,
                payload=payload
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            operator_logger.error(f"Could not record provider call failure for subscription {subscription_id}: {e}")
        finally:
            db.close()
