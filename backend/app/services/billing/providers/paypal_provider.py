"""
PayPal implementation of the payment provider (REST API over httpx).
"""
import logging
import time
import uuid
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.models.enums import Provider
from app.services.billing.providers.base import PaymentProvider, ProviderCheckout, RemoteSubscription
from app.services.billing.results import ProviderCallError
from app.utils.datetime_utils import parse_iso

logger = logging.getLogger(__name__)

# Headers PayPal sends with every webhook delivery
TRANSMISSION_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-cert-url",
    "paypal-auth-algo",
    "paypal-transmission-sig",
)

# Refresh the cached token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN = 60


class PayPalProvider(PaymentProvider):
    """PayPal Subscriptions API client"""

    provider = Provider.PAYPAL

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        webhook_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        frontend_url: Optional[str] = None
    ):
        self.client_id = client_id if client_id is not None else settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.PAYPAL_CLIENT_SECRET
        self.webhook_id = webhook_id if webhook_id is not None else settings.PAYPAL_WEBHOOK_ID
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")
        self._client = httpx.Client(
            base_url=base_url or settings.paypal_base_url,
            timeout=timeout if timeout is not None else settings.PAYPAL_TIMEOUT,
            transport=transport
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise ProviderCallError("PayPal credentials not configured", provider="paypal", action="auth")

        try:
            response = self._client.post(
                "/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"}
            )
        except httpx.HTTPError as e:
            raise ProviderCallError(f"PayPal token request failed: {e}", provider="paypal", action="auth") from e

        if response.status_code != 200:
            logger.error(f"PayPal access token error: {response.status_code} {response.text}")
            raise ProviderCallError(
                "Failed to get PayPal access token",
                provider="paypal",
                action="auth",
                status_code=response.status_code
            )

        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 0))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"PayPal access token response unreadable: {response.text[:200]}")
            raise ProviderCallError(
                "PayPal returned an unreadable access token response", provider="paypal", action="auth"
            ) from e
        self._access_token = access_token
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return self._access_token

    def _request(self, method: str, path: str, action: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._get_access_token()}",
            "Content-Type": "application/json",
        }
        if method == "POST":
            headers["PayPal-Request-Id"] = str(uuid.uuid4())

        try:
            response = self._client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"PayPal {action} request failed: {e}")
            raise ProviderCallError(f"PayPal {action} request failed: {e}", provider="paypal", action=action) from e

        if response.status_code >= 400:
            logger.error(f"PayPal {action} error: {response.status_code} {response.text}")
            raise ProviderCallError(
                f"PayPal {action} returned {response.status_code}",
                provider="paypal",
                action=action,
                status_code=response.status_code
            )

        # 204 No Content for cancel/suspend/activate
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"PayPal {action} returned a non-JSON body: {response.text[:200]}")
            raise ProviderCallError(
                f"PayPal {action} returned an unreadable response", provider="paypal", action=action,
                status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise ProviderCallError(
                f"PayPal {action} returned an unexpected response", provider="paypal", action=action,
                status_code=response.status_code
            )
        return data

    # ------------------------------------------------------------------
    # Subscription operations
    # ------------------------------------------------------------------

    def create_subscription(self, subscription, plan, employer) -> ProviderCheckout:
        if not plan.paypal_plan_id:
            raise ProviderCallError(f"Plan {plan.slug} has no PayPal plan", provider="paypal", action="create")

        body = {
            "plan_id": plan.paypal_plan_id,
            "custom_id": str(subscription.id),
            "quantity": "1",
            "subscriber": {
                "name": {"given_name": employer.company_name},
                "email_address": employer.email,
            },
            "application_context": {
                "brand_name": settings.PAYPAL_BRAND_NAME,
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "return_url": f"{self.frontend_url}/billing/success",
                "cancel_url": f"{self.frontend_url}/billing/cancelled",
            },
        }
        data = self._request("POST", "/v1/billing/subscriptions", "create", json=body)

        approval_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"),
            None
        )
        logger.info(f"Created PayPal subscription {data.get('id')} for subscription {subscription.id}")
        return ProviderCheckout(
            redirect_url=approval_url,
            external_subscription_id=data.get("id"),
            status=data.get("status"),
        )

    def cancel_subscription(self, external_id: str, at_period_end: bool = True, reason: Optional[str] = None) -> None:
        # PayPal cancels immediately; access until the period end is kept locally
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{external_id}/cancel",
            "cancel",
            json={"reason": reason or "Cancelled by employer"}
        )
        logger.info(f"Cancelled PayPal subscription {external_id}")

    def suspend_subscription(self, external_id: str, reason: Optional[str] = None) -> None:
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{external_id}/suspend",
            "suspend",
            json={"reason": reason or "Suspended by employer"}
        )
        logger.info(f"Suspended PayPal subscription {external_id}")

    def resume_subscription(self, external_id: str, reason: Optional[str] = None) -> None:
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{external_id}/activate",
            "resume",
            json={"reason": reason or "Reactivating the subscription"}
        )
        logger.info(f"Reactivated PayPal subscription {external_id}")

    def fetch_subscription(self, external_id: str) -> RemoteSubscription:
        data = self._request("GET", f"/v1/billing/subscriptions/{external_id}", "fetch")
        billing_info = data.get("billing_info") or {}
        last_payment = billing_info.get("last_payment") or {}
        status = data.get("status", "UNKNOWN")
        return RemoteSubscription(
            external_subscription_id=external_id,
            status=status,
            period_start=parse_iso(last_payment.get("time")) or parse_iso(data.get("start_time")),
            period_end=parse_iso(billing_info.get("next_billing_time")),
            paused=status == "SUSPENDED",
            raw=data,
        )

    # ------------------------------------------------------------------
    # Webhook verification
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, headers: Dict[str, str], event: Dict[str, Any]) -> bool:
        """Ask PayPal whether a webhook delivery is genuine.

        Args:
            headers: Lower-cased request headers
            event: Parsed webhook body

        Returns:
            True only when PayPal answers verification_status == SUCCESS

        Raises:
            ProviderCallError: If the verification API cannot be reached
        """
        if not self.webhook_id:
            raise ProviderCallError("PayPal webhook id not configured", provider="paypal", action="verify")

        body = {
            "webhook_id": self.webhook_id,
            "transmission_id": headers["paypal-transmission-id"],
            "transmission_time": headers["paypal-transmission-time"],
            "transmission_sig": headers["paypal-transmission-sig"],
            "cert_url": headers["paypal-cert-url"],
            "auth_algo": headers["paypal-auth-algo"],
            "webhook_event": event,
        }
        data = self._request("POST", "/v1/notifications/verify-webhook-signature", "verify", json=body)
        return data.get("verification_status") == "SUCCESS"
