"""Webhook processing pipeline: verify -> normalize -> apply"""
import logging
from typing import Mapping

from app.core.logging import webhook_logger
from app.core.metrics import webhook_rejections_counter
from app.models.enums import Provider
from app.services.billing.normalizer import normalize
from app.services.billing.results import (
    ErrorKind, InvalidSignatureError, MalformedPayloadError, WebhookResult,
)

logger = logging.getLogger(__name__)


def process_webhook(raw_body: bytes, headers: Mapping[str, str], provider: Provider, verifier,
                    orchestrator) -> WebhookResult:
    """Process one webhook delivery.

    Verification and normalization failures never reach the orchestrator.
    Never raises for bad input: the result's http_status tells the caller
    what to answer.

    Args:
        raw_body: Request body exactly as received
        headers: Request headers
        provider: Provider the endpoint belongs to
        verifier: WebhookVerifier
        orchestrator: ReconciliationOrchestrator

    Returns:
        WebhookResult
    """
    try:
        verified = verifier.verify(raw_body, headers, provider)
    except InvalidSignatureError as e:
        webhook_rejections_counter.labels(provider=provider.value, reason="invalid_signature").inc()
        return WebhookResult(provider=provider.value, applied=False, error=ErrorKind.INVALID_SIGNATURE, reason=str(e))
    except MalformedPayloadError as e:
        webhook_rejections_counter.labels(provider=provider.value, reason="malformed_payload").inc()
        webhook_logger.warning(f"Malformed {provider.value} webhook: {e}")
        return WebhookResult(provider=provider.value, applied=False, error=ErrorKind.MALFORMED_PAYLOAD, reason=str(e))

    try:
        event = normalize(verified)
    except MalformedPayloadError as e:
        webhook_rejections_counter.labels(provider=provider.value, reason="malformed_payload").inc()
        webhook_logger.warning(f"Could not normalize {provider.value} webhook: {e}")
        event_id = verified.payload.get("id")
        if isinstance(event_id, str) and event_id:
            event_type = verified.payload.get("type") or verified.payload.get("event_type")
            orchestrator.record_rejected(provider, event_id, str(event_type or ""), str(e), verified.payload)
        return WebhookResult(provider=provider.value, applied=False, error=ErrorKind.MALFORMED_PAYLOAD, reason=str(e))

    webhook_logger.info(
        f"{provider.value} webhook {event.external_event_id} ({event.event_type}) -> {event.kind.value}"
        + ("" if verified.verified else " [UNVERIFIED]")
    )

    result = orchestrator.apply_event(event)
    return WebhookResult(
        provider=provider.value,
        applied=result.applied,
        error=result.error,
        event_id=event.external_event_id,
        subscription_id=result.subscription_id,
        status=result.new_status,
        reason=result.reason
    )
