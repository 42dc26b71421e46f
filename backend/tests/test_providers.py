"""Payment provider adapter and notification tests"""
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest
import stripe

from app.services.billing.notifications import EmailNotifier, SubscriptionNotice
from app.services.billing.providers.paypal_provider import PayPalProvider
from app.services.billing.providers.stripe_provider import StripeProvider, get_stripe_value
from app.services.billing.results import ProviderCallError

PLAN = SimpleNamespace(slug="standard", trial_days=14, stripe_price_id="price_std", paypal_plan_id="P-STD")
EMPLOYER = SimpleNamespace(id=3, company_name="Acme Hiring", email="billing@acme.test", stripe_customer_id=None)


def local_subscription(subscription_id=5, is_trial=False):
    return SimpleNamespace(id=subscription_id, is_trial=is_trial)


@pytest.mark.high
class TestStripeProvider:
    """Test Stripe adapter calls"""

    def test_create_checkout_session(self):
        provider = StripeProvider(api_key="sk_test", frontend_url="https://jobs.test/")
        session = {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1", "subscription": None}

        with patch.object(stripe.checkout.Session, "create", return_value=session) as mock_create:
            checkout = provider.create_subscription(local_subscription(is_trial=True), PLAN, EMPLOYER)

        kwargs = mock_create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test"
        assert kwargs["client_reference_id"] == "5"
        assert kwargs["customer_email"] == "billing@acme.test"
        assert kwargs["subscription_data"]["trial_period_days"] == 14
        assert kwargs["subscription_data"]["metadata"]["subscription_id"] == "5"
        assert kwargs["success_url"].startswith("https://jobs.test/billing/success")
        assert checkout.redirect_url == "https://checkout.stripe.test/cs_1"
        assert checkout.checkout_reference == "cs_1"
        assert checkout.external_subscription_id is None

    def test_existing_customer_reused(self):
        provider = StripeProvider(api_key="sk_test")
        employer = SimpleNamespace(id=3, company_name="Acme", email="a@acme.test", stripe_customer_id="cus_1")

        with patch.object(stripe.checkout.Session, "create", return_value={"id": "cs_1", "url": "u"}) as mock_create:
            provider.create_subscription(local_subscription(), PLAN, employer)

        assert mock_create.call_args.kwargs["customer"] == "cus_1"
        assert "customer_email" not in mock_create.call_args.kwargs
        assert "trial_period_days" not in mock_create.call_args.kwargs["subscription_data"]

    def test_cancel_at_period_end_and_now(self):
        provider = StripeProvider(api_key="sk_test")

        with patch.object(stripe.Subscription, "modify") as mock_modify, \
                patch.object(stripe.Subscription, "cancel") as mock_cancel:
            provider.cancel_subscription("sub_1", at_period_end=True)
            provider.cancel_subscription("sub_2", at_period_end=False)

        mock_modify.assert_called_once_with("sub_1", api_key="sk_test", cancel_at_period_end=True)
        mock_cancel.assert_called_once_with("sub_2", api_key="sk_test")

    def test_suspend_and_resume_use_pause_collection(self):
        provider = StripeProvider(api_key="sk_test")

        with patch.object(stripe.Subscription, "modify") as mock_modify:
            provider.suspend_subscription("sub_1")
            provider.resume_subscription("sub_1")

        assert mock_modify.call_args_list[0].kwargs["pause_collection"] == {"behavior": "void"}
        assert mock_modify.call_args_list[1].kwargs["pause_collection"] == ""

    def test_stripe_error_mapped(self):
        """Test SDK errors surface as ProviderCallError"""
        provider = StripeProvider(api_key="sk_test")
        error = stripe.InvalidRequestError("No such subscription", "id", http_status=404)

        with patch.object(stripe.Subscription, "modify", side_effect=error):
            with pytest.raises(ProviderCallError) as exc_info:
                provider.suspend_subscription("sub_missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.action == "suspend"

    def test_missing_key(self):
        with pytest.raises(ProviderCallError):
            StripeProvider(api_key="").cancel_subscription("sub_1")

    def test_fetch_reads_period_from_items(self):
        provider = StripeProvider(api_key="sk_test")
        remote = {
            "id": "sub_1",
            "status": "active",
            "pause_collection": None,
            "cancel_at_period_end": True,
            "items": {"data": [{"current_period_start": 1772366400, "current_period_end": 1774958400}]},
        }

        with patch.object(stripe.Subscription, "retrieve", return_value=remote):
            result = provider.fetch_subscription("sub_1")

        assert result.status == "active"
        assert result.cancel_at_period_end is True
        assert result.paused is False
        assert result.period_start == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_get_stripe_value(self):
        assert get_stripe_value({"a": None}, "a", "fallback") == "fallback"
        assert get_stripe_value(SimpleNamespace(a=1), "a") == 1
        assert get_stripe_value(None, "a", 2) == 2


class PayPalStub:
    """Routes MockTransport requests and records them"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 32400})
        return self.routes(request)

    def paths(self):
        return [r.url.path for r in self.requests]


def paypal(stub, **kwargs) -> PayPalProvider:
    values = {
        "client_id": "client",
        "client_secret": "secret",
        "webhook_id": "WH-ID",
        "base_url": "https://paypal.test",
        "frontend_url": "https://jobs.test",
        "transport": httpx.MockTransport(stub),
    }
    values.update(kwargs)
    return PayPalProvider(**values)


@pytest.mark.high
class TestPayPalProvider:
    """Test PayPal REST calls"""

    def test_create_subscription(self):
        stub = PayPalStub(lambda request: httpx.Response(201, json={
            "id": "I-NEW",
            "status": "APPROVAL_PENDING",
            "links": [
                {"rel": "self", "href": "https://paypal.test/v1/billing/subscriptions/I-NEW"},
                {"rel": "approve", "href": "https://paypal.test/approve/I-NEW"},
            ],
        }))

        checkout = paypal(stub).create_subscription(local_subscription(), PLAN, EMPLOYER)

        assert checkout.redirect_url == "https://paypal.test/approve/I-NEW"
        assert checkout.external_subscription_id == "I-NEW"
        request = stub.requests[-1]
        body = json.loads(request.content)
        assert body["plan_id"] == "P-STD"
        assert body["custom_id"] == "5"
        assert request.headers["Authorization"] == "Bearer A21"
        assert request.headers["PayPal-Request-Id"]

    def test_token_cached(self):
        stub = PayPalStub(lambda request: httpx.Response(204))
        adapter = paypal(stub)

        adapter.suspend_subscription("I-1")
        adapter.resume_subscription("I-1")

        assert stub.paths() == [
            "/v1/oauth2/token",
            "/v1/billing/subscriptions/I-1/suspend",
            "/v1/billing/subscriptions/I-1/activate",
        ]

    def test_cancel_sends_reason(self):
        stub = PayPalStub(lambda request: httpx.Response(204))

        paypal(stub).cancel_subscription("I-1", at_period_end=True, reason="Hiring freeze")

        assert stub.requests[-1].url.path == "/v1/billing/subscriptions/I-1/cancel"
        assert json.loads(stub.requests[-1].content) == {"reason": "Hiring freeze"}

    def test_error_status_raises(self):
        stub = PayPalStub(lambda request: httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY"}))

        with pytest.raises(ProviderCallError) as exc_info:
            paypal(stub).suspend_subscription("I-1")

        assert exc_info.value.status_code == 422

    def test_network_error_raises(self):
        def routes(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderCallError):
            paypal(PayPalStub(routes)).fetch_subscription("I-1")

    def test_html_response_raises(self):
        """Test a maintenance page served with 200 is a provider failure"""
        stub = PayPalStub(lambda request: httpx.Response(
            200, text="<html>maintenance</html>", headers={"content-type": "text/html"}
        ))

        with pytest.raises(ProviderCallError) as exc_info:
            paypal(stub).fetch_subscription("I-1")

        assert exc_info.value.status_code == 200

    def test_non_object_response_raises(self):
        stub = PayPalStub(lambda request: httpx.Response(200, json=["I-1"]))

        with pytest.raises(ProviderCallError):
            paypal(stub).fetch_subscription("I-1")

    @pytest.mark.parametrize("token_response", [
        httpx.Response(200, json={"token_type": "Bearer"}),
        httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"}),
        httpx.Response(200, json={"access_token": "A21", "expires_in": "soon"}),
    ])
    def test_unreadable_token_response_raises(self, token_response):
        requests = []

        def handler(request):
            requests.append(request.url.path)
            return token_response

        provider = paypal(None, transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderCallError):
            provider.suspend_subscription("I-1")
        assert requests == ["/v1/oauth2/token"]

    def test_missing_credentials(self):
        stub = PayPalStub(lambda request: httpx.Response(204))

        with pytest.raises(ProviderCallError):
            paypal(stub, client_id="").suspend_subscription("I-1")
        assert stub.requests == []

    def test_fetch_subscription(self):
        stub = PayPalStub(lambda request: httpx.Response(200, json={
            "id": "I-1",
            "status": "SUSPENDED",
            "start_time": "2026-02-01T00:00:00Z",
            "billing_info": {"next_billing_time": "2026-04-01T00:00:00Z"},
        }))

        remote = paypal(stub).fetch_subscription("I-1")

        assert remote.status == "SUSPENDED"
        assert remote.paused is True
        assert remote.period_start == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert remote.period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)


def notice(**fields):
    values = {
        "subscription_id": 1,
        "employer_email": "billing@acme.test",
        "company_name": "Acme <Hiring>",
        "plan_name": "Standard",
        "provider": "stripe",
        "status": "past_due",
        "grace_period_ends_at": datetime(2026, 3, 8, tzinfo=timezone.utc),
    }
    values.update(fields)
    return SubscriptionNotice(**values)


@pytest.mark.medium
class TestEmailNotifier:
    """Test notification emails"""

    def test_skipped_without_api_key(self):
        with patch("resend.Emails.send") as mock_send:
            assert EmailNotifier(api_key="").notify("payment_failed", notice()) is False
        mock_send.assert_not_called()

    def test_sends_email(self):
        with patch("resend.Emails.send", return_value={"id": "em_1"}) as mock_send:
            assert EmailNotifier(api_key="re_test", from_email="billing@jobs.test").notify(
                "payment_failed", notice()
            ) is True

        params = mock_send.call_args.args[0]
        assert params["to"] == "billing@acme.test"
        assert params["subject"] == "Action required: payment failed for Standard"
        assert "March 08, 2026" in params["html"]
        assert "Acme &lt;Hiring&gt;" in params["html"]

    def test_send_failure_returns_false(self):
        with patch("resend.Emails.send", side_effect=Exception("rate limited")):
            assert EmailNotifier(api_key="re_test").notify("expired", notice()) is False

    def test_unknown_notification(self):
        assert EmailNotifier(api_key="re_test").notify("birthday", notice()) is False
