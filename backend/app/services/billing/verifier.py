"""Webhook authenticity checks for Stripe and PayPal deliveries"""
import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from app.core.config import settings
from app.core.logging import security_logger
from app.models.enums import Provider
from app.services.billing.events import VerifiedEvent
from app.services.billing.providers.paypal_provider import TRANSMISSION_HEADERS
from app.services.billing.results import InvalidSignatureError, MalformedPayloadError, ProviderCallError

logger = logging.getLogger(__name__)


def parse_payload(raw_body: bytes) -> Dict[str, Any]:
    """Decode a JSON webhook body, which must be an object"""
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"Invalid JSON payload: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Webhook payload must be a JSON object")
    return payload


class WebhookVerifier:
    """Authenticates inbound webhooks. Never touches the database.

    Args:
        stripe_secret: Stripe endpoint secret (whsec_...)
        stripe_tolerance: Maximum signature age in seconds (replay protection)
        paypal: Adapter used to call PayPal's verification endpoint
        paypal_verify: Whether PayPal deliveries are verified at all
        production: Fail closed on missing configuration
    """

    def __init__(
        self,
        stripe_secret: Optional[str] = None,
        stripe_tolerance: Optional[int] = None,
        paypal=None,
        paypal_verify: Optional[bool] = None,
        production: Optional[bool] = None
    ):
        self.stripe_secret = stripe_secret if stripe_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.stripe_tolerance = stripe_tolerance if stripe_tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE
        self.paypal = paypal
        self.paypal_verify = paypal_verify if paypal_verify is not None else settings.PAYPAL_VERIFY_WEBHOOK_SIGNATURE
        self.production = production if production is not None else settings.is_production

    def verify(self, raw_body: bytes, headers: Mapping[str, str], provider: Provider) -> VerifiedEvent:
        """Verify a webhook delivery.

        Raises:
            InvalidSignatureError: Signature missing, wrong, expired or unverifiable
            MalformedPayloadError: Body is not a JSON object
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        if provider == Provider.STRIPE:
            return self._verify_stripe(raw_body, lowered)
        if provider == Provider.PAYPAL:
            return self._verify_paypal(raw_body, lowered)
        raise InvalidSignatureError(f"Unsupported provider {provider}")

    def _verify_stripe(self, raw_body: bytes, headers: Dict[str, str]) -> VerifiedEvent:
        if not self.stripe_secret:
            if self.production:
                security_logger.error("Stripe webhook secret not configured in production - rejecting webhook")
                raise InvalidSignatureError("Stripe webhook secret not configured")
            logger.warning("Stripe webhook secret not configured - accepting UNVERIFIED webhook (development only)")
            return VerifiedEvent(provider=Provider.STRIPE, payload=parse_payload(raw_body), verified=False)

        sig_header = headers.get("stripe-signature")
        if not sig_header:
            security_logger.warning("Stripe webhook rejected: missing stripe-signature header")
            raise InvalidSignatureError("Missing stripe-signature header")

        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayloadError("Webhook body is not UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, sig_header, self.stripe_secret, tolerance=self.stripe_tolerance)
        except stripe.SignatureVerificationError as e:
            security_logger.warning(f"Stripe webhook rejected: {e}")
            raise InvalidSignatureError("Invalid Stripe signature") from e

        return VerifiedEvent(provider=Provider.STRIPE, payload=parse_payload(raw_body), verified=True)

    def _verify_paypal(self, raw_body: bytes, headers: Dict[str, str]) -> VerifiedEvent:
        payload = parse_payload(raw_body)

        if not self.paypal_verify:
            if self.production:
                security_logger.error("PayPal webhook verification disabled in production - rejecting webhook")
                raise InvalidSignatureError("PayPal webhook verification disabled")
            logger.warning("PayPal webhook verification disabled - accepting UNVERIFIED webhook (development only)")
            return VerifiedEvent(provider=Provider.PAYPAL, payload=payload, verified=False)

        missing = [h for h in TRANSMISSION_HEADERS if not headers.get(h)]
        if missing:
            security_logger.warning(f"PayPal webhook rejected: missing headers {', '.join(missing)}")
            raise InvalidSignatureError("Missing PayPal transmission headers")

        if self.paypal is None:
            security_logger.error("PayPal webhook received but no PayPal adapter is configured")
            raise InvalidSignatureError("PayPal verification unavailable")

        try:
            verified = self.paypal.verify_webhook_signature(headers, payload)
        except ProviderCallError as e:
            # Fail closed: an unreachable verification API is a rejection
            security_logger.error(f"PayPal webhook verification call failed: {e}")
            raise InvalidSignatureError("PayPal verification failed") from e

        if not verified:
            security_logger.warning(
                f"PayPal webhook rejected: verification failed for transmission {headers.get('paypal-transmission-id')}"
            )
            raise InvalidSignatureError("Invalid PayPal signature")

        return VerifiedEvent(provider=Provider.PAYPAL, payload=payload, verified=True)
