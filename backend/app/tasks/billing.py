"""Background billing tasks: grace-period sweep, provider call retries, trial notices

Each loop runs its blocking work in a worker thread so the event loop keeps
serving webhooks.
"""
import asyncio
import logging

from app.services.billing.container import get_orchestrator, get_retry_queue
from app.services.billing.results import RETRYABLE_ERRORS
from app.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

GRACE_SWEEP_INTERVAL = 300  # seconds
RETRY_POLL_INTERVAL = 15  # seconds
TRIAL_NOTICE_INTERVAL = 24 * 60 * 60  # seconds


async def grace_sweep_task():
    """Expire past_due subscriptions whose grace period has ended"""
    while True:
        try:
            await asyncio.sleep(GRACE_SWEEP_INTERVAL)
            results = await asyncio.to_thread(get_orchestrator().expire_overdue)
            expired = [r.subscription_id for r in results if r.applied]
            if expired:
                logger.info(f"Grace sweep expired {len(expired)} subscription(s): {expired}")
            retryable = [r for r in results if r.error in RETRYABLE_ERRORS]
            if retryable:
                logger.warning(f"Grace sweep will revisit {len(retryable)} subscription(s) next run")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in grace sweep task: {e}", exc_info=True)


async def provider_retry_task():
    """Run queued provider call retries whose backoff has elapsed"""
    while True:
        try:
            await asyncio.sleep(RETRY_POLL_INTERVAL)
            succeeded = await asyncio.to_thread(get_retry_queue().process_due, utcnow())
            if succeeded:
                logger.info(f"Provider retry worker completed {len(succeeded)} call(s)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in provider retry task: {e}", exc_info=True)


async def trial_notice_task():
    """Send trial-ending notices once a day"""
    while True:
        try:
            sent = await asyncio.to_thread(get_orchestrator().notify_trials_ending)
            if sent:
                logger.info(f"Sent {sent} trial-ending notice(s)")
            await asyncio.sleep(TRIAL_NOTICE_INTERVAL)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in trial notice task: {e}", exc_info=True)
            await asyncio.sleep(RETRY_POLL_INTERVAL)


def start_billing_tasks():
    """Start all billing background loops. Returns the created tasks."""
    return [
        asyncio.create_task(grace_sweep_task()),
        asyncio.create_task(provider_retry_task()),
        asyncio.create_task(trial_notice_task()),
    ]
