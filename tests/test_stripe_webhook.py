"""
Tests for the Stripe Integration

Webhooks are signed locally with the test secret in Stripe's
"t=<timestamp>,v1=<hmac>" format.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from billing.stripe_integration import StripeIntegration, StripeIntegrationError
from persistence.models import TransactionStatus

from conftest import WEBHOOK_SECRET


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def intent_event(event_type: str, transaction_id: str, **intent) -> str:
    return json.dumps({
        "id": "evt_test",
        "type": event_type,
        "data": {
            "object": {
                "id": "pi_test",
                "metadata": {"transaction_id": transaction_id},
                **intent,
            }
        },
    })


class TestPaymentIntent:
    """Test payment intent creation without Stripe credentials."""

    def test_mock_intent(self, services):
        """Mock mode fabricates an intent and stores its id."""
        tx = services.purchases.create_purchase("buyer", "25", "250")

        intent = services.stripe.create_payment_intent(tx)

        assert not services.stripe.is_available
        assert intent["id"] == f"pi_mock_{tx.id[:8]}"
        assert intent["amount"] == 2500
        stored = services.purchases.get_transaction(tx.id)
        assert stored.payment_intent_id == intent["id"]


class TestWebhook:
    """Test webhook verification and settlement."""

    def test_succeeded_completes_purchase(self, services):
        """payment_intent.succeeded credits the account."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        payload = intent_event("payment_intent.succeeded", tx.id, latest_charge="ch_abc")

        result = services.stripe.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert result["processed"] is True
        stored = services.purchases.get_transaction(tx.id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.charge_id == "ch_abc"
        assert services.engine.get_balance("buyer") == Decimal("100.0000")

    def test_redelivery_credits_once(self, services):
        """A webhook delivered twice credits once."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        payload = intent_event("payment_intent.succeeded", tx.id)

        services.stripe.handle_webhook(payload.encode("utf-8"), sign(payload))
        services.stripe.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert services.engine.get_balance("buyer") == Decimal("100.0000")

    def test_failed_event_fails_purchase(self, services):
        """payment_intent.payment_failed records the decline message."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        payload = intent_event(
            "payment_intent.payment_failed", tx.id,
            last_payment_error={"message": "Your card was declined."},
        )

        services.stripe.handle_webhook(payload.encode("utf-8"), sign(payload))

        stored = services.purchases.get_transaction(tx.id)
        assert stored.status == TransactionStatus.FAILED
        assert stored.failure_reason == "Your card was declined."

    def test_bad_signature_rejected(self, services):
        """A signature made with another secret is refused."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        payload = intent_event("payment_intent.succeeded", tx.id)

        with pytest.raises(StripeIntegrationError, match="Invalid webhook signature"):
            services.stripe.handle_webhook(payload.encode("utf-8"), sign(payload, "whsec_other"))

        assert services.engine.get_balance("buyer") == Decimal("0")

    def test_non_utf8_payload_rejected(self, services):
        """A body that is not UTF-8 is refused before any processing."""
        with pytest.raises(StripeIntegrationError, match="not valid UTF-8"):
            services.stripe.handle_webhook(b"\xff\xfe\x00bad", "t=1,v1=abc")

    def test_missing_signature_rejected(self, services):
        """The Stripe-Signature header is required."""
        with pytest.raises(StripeIntegrationError):
            services.stripe.handle_webhook(b"{}", None)

    def test_unconfigured_secret_rejected(self, services):
        """Without a webhook secret no event is accepted."""
        integration = StripeIntegration(services.purchases, webhook_secret=None)
        integration.webhook_secret = None

        with pytest.raises(StripeIntegrationError, match="not configured"):
            integration.handle_webhook(b"{}", "t=1,v1=abc")

    def test_unhandled_event_ignored(self, services):
        """Other event types are acknowledged without processing."""
        payload = json.dumps({"id": "evt_1", "type": "customer.created", "data": {"object": {}}})

        result = services.stripe.handle_webhook(payload.encode("utf-8"), sign(payload))

        assert result == {"event_type": "customer.created", "processed": False}
