"""
Tests for the Stripe Integration

Webhooks are signed locally with the same scheme Stripe uses
(HMAC-SHA256 over "{timestamp}.{payload}").
"""

import json
import time
import pytest
import stripe

from billing.stripe_integration import StripeIntegration, StripeIntegrationError
from persistence.models import GrantSource, PaymentStatus

WEBHOOK_SECRET = "whsec_test_secret"


def checkout_event(event_type, payment_id, user_id="alice", payment_status="paid"):
    return json.dumps({
        "id": "evt_test_1",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "payment_intent": "pi_test_1",
                "payment_status": payment_status,
                "amount_total": 600,
                "currency": "usd",
                "livemode": False,
                "created": int(time.time()),
                "customer_details": {"email": "alice@example.com"},
                "metadata": {"payment_id": payment_id, "user_id": user_id},
            }
        },
    })


@pytest.fixture
def integration(ledger):
    return StripeIntegration(ledger.settlement, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def sign(sign_webhook):
    def _sign(payload, secret=WEBHOOK_SECRET):
        return sign_webhook(payload, secret)
    return _sign


class TestWebhook:
    """Settling payments from Checkout webhooks."""

    def test_completed_session_credits_quota(self, ledger, integration, sign):
        payment_id = ledger.create_payment("alice", "coins_600", "stripe")
        payload = checkout_event("checkout.session.completed", payment_id)

        result = integration.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert result["processed"] is True
        assert result["status"] == "success"
        payment = ledger.get_payment("alice", payment_id)
        assert payment.status is PaymentStatus.SUCCESS
        assert payment.environment == "sandbox"
        assert payment.provider_fields["payment_intent"] == "pi_test_1"
        assert ledger.summary("alice").remaining == 700

    def test_redelivery_is_acknowledged_once(self, ledger, integration, sign):
        payment_id = ledger.create_payment("alice", "coins_600", "stripe")
        payload = checkout_event("checkout.session.completed", payment_id)

        integration.handle_webhook(payload.encode("utf-8"), sign(payload))
        result = integration.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert result["duplicate"] is True
        assert result["processed"] is False
        purchases = [g for g in ledger.grants.list_for_user("alice") if g.source == GrantSource.PURCHASE.value]
        assert len(purchases) == 1

    def test_unpaid_completion_waits_for_async_result(self, ledger, integration, sign):
        payment_id = ledger.create_payment("alice", "coins_600", "stripe")
        payload = checkout_event("checkout.session.completed", payment_id, payment_status="unpaid")

        result = integration.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert result["processed"] is False
        assert ledger.get_payment("alice", payment_id).status is PaymentStatus.WAITING

        payload = checkout_event("checkout.session.async_payment_succeeded", payment_id)
        integration.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert ledger.get_payment("alice", payment_id).status is PaymentStatus.SUCCESS

    def test_expired_session_cancels_payment(self, ledger, integration, sign):
        payment_id = ledger.create_payment("alice", "coins_600", "stripe")
        payload = checkout_event("checkout.session.expired", payment_id, payment_status="unpaid")

        integration.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert ledger.get_payment("alice", payment_id).status is PaymentStatus.CANCELED
        assert ledger.summary("alice").remaining == 0

    def test_async_failure_fails_payment(self, ledger, integration, sign):
        payment_id = ledger.create_payment("alice", "coins_600", "stripe")
        payload = checkout_event("checkout.session.async_payment_failed", payment_id)

        integration.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert ledger.get_payment("alice", payment_id).status is PaymentStatus.FAILED

    def test_unrelated_event_ignored(self, integration, sign):
        payload = json.dumps({"id": "evt_2", "type": "customer.created", "data": {"object": {}}})

        result = integration.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert result == {"event_type": "customer.created", "processed": False}

    def test_invalid_signature_rejected(self, ledger, integration, sign):
        payment_id = ledger.create_payment("alice", "coins_600", "stripe")
        payload = checkout_event("checkout.session.completed", payment_id)

        with pytest.raises(StripeIntegrationError):
            integration.handle_webhook(payload.encode("utf-8"), sign(payload, secret="whsec_wrong"))

        assert ledger.get_payment("alice", payment_id).status is PaymentStatus.WAITING

    def test_missing_metadata_rejected(self, integration, sign):
        payload = json.dumps({
            "id": "evt_3",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_x", "payment_status": "paid", "metadata": {}}},
        })

        with pytest.raises(StripeIntegrationError):
            integration.handle_webhook(payload.encode("utf-8"), sign(payload))

    def test_webhook_requires_secret(self, ledger, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
        integration = StripeIntegration(ledger.settlement)

        with pytest.raises(StripeIntegrationError):
            integration.handle_webhook(b"{}", "t=1,v1=abc")


class TestCheckoutSession:
    """Creating hosted checkout sessions."""

    def test_requires_api_key(self, ledger, monkeypatch):
        monkeypatch.delenv("STRIPE_API_KEY", raising=False)
        integration = StripeIntegration(ledger.settlement)

        assert integration.is_available is False
        with pytest.raises(StripeIntegrationError):
            integration.create_checkout_session("alice", "coins_600", "https://x/ok", "https://x/cancel")

    def test_creates_payment_and_session(self, ledger, monkeypatch):
        calls = []

        def fake_create(**kwargs):
            calls.append(kwargs)
            return {"id": "cs_test_42", "url": "https://checkout.stripe.com/c/cs_test_42"}

        monkeypatch.setattr(stripe, "api_key", None)
        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        integration = StripeIntegration(ledger.settlement, api_key="sk_test_123")

        session = integration.create_checkout_session("alice", "coins_600", "https://x/ok", "https://x/cancel")

        assert session.session_id == "cs_test_42"
        assert calls[0]["metadata"]["payment_id"] == session.payment_id
        assert calls[0]["line_items"][0]["price_data"]["unit_amount"] == 600
        payment = ledger.get_payment("alice", session.payment_id)
        assert payment.status is PaymentStatus.WAITING
        assert payment.source == "stripe"

    def test_failed_session_fails_payment(self, ledger, monkeypatch):
        def broken_create(**kwargs):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe, "api_key", None)
        monkeypatch.setattr(stripe.checkout.Session, "create", broken_create)
        integration = StripeIntegration(ledger.settlement, api_key="sk_test_123")

        with pytest.raises(StripeIntegrationError):
            integration.create_checkout_session("alice", "coins_600", "https://x/ok", "https://x/cancel")

        payments = ledger.db.execute("SELECT status FROM payments WHERE user_id = ?", ("alice",))
        assert [p["status"] for p in payments] == ["failed"]
