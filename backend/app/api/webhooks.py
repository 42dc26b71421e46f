"""Provider webhook endpoints

These routes must receive the raw request body: signature verification is
computed over the exact bytes the provider sent.
"""
import asyncio
import logging
from functools import partial

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import webhook_logger
from app.core.metrics import webhook_rejections_counter
from app.models.enums import Provider
from app.services.billing.container import get_orchestrator, get_verifier
from app.services.billing.webhooks import process_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

# Bodies never carry internal detail; providers only act on the status code
RESPONSE_BODIES = {
    200: {"status": "received"},
    400: {"status": "rejected"},
    500: {"status": "error"},
}


async def _handle_webhook(request: Request, provider: Provider, verifier, orchestrator) -> JSONResponse:
    payload = await request.body()
    headers = dict(request.headers)

    loop = asyncio.get_running_loop()
    work = loop.run_in_executor(None, partial(process_webhook, payload, headers, provider, verifier, orchestrator))
    try:
        # The worker thread is not interrupted on timeout; a commit in progress completes
        result = await asyncio.wait_for(work, timeout=settings.WEBHOOK_PROCESSING_DEADLINE)
    except asyncio.TimeoutError:
        webhook_rejections_counter.labels(provider=provider.value, reason="deadline_exceeded").inc()
        webhook_logger.error(
            f"{provider.value} webhook exceeded {settings.WEBHOOK_PROCESSING_DEADLINE}s deadline; "
            f"asking provider to retry"
        )
        return JSONResponse(status_code=500, content=RESPONSE_BODIES[500])

    status_code = result.http_status
    if status_code != 200:
        webhook_logger.warning(
            f"{provider.value} webhook {result.event_id or '-'} answered {status_code}: "
            f"{result.error.value if result.error else 'ok'} ({result.reason})"
        )
    return JSONResponse(status_code=status_code, content=RESPONSE_BODIES[status_code])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    verifier=Depends(get_verifier),
    orchestrator=Depends(get_orchestrator)
):
    """Handle Stripe webhook events"""
    return await _handle_webhook(request, Provider.STRIPE, verifier, orchestrator)


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    verifier=Depends(get_verifier),
    orchestrator=Depends(get_orchestrator)
):
    """Handle PayPal webhook events"""
    return await _handle_webhook(request, Provider.PAYPAL, verifier, orchestrator)
