"""
Stripe Integration for Credit Purchases

Creates PaymentIntents for pending purchases and settles them from Stripe
webhooks:
- payment_intent.succeeded       -> complete_purchase
- payment_intent.payment_failed  -> fail_purchase

Stripe delivers webhooks at least once. That is safe because purchase
completion is idempotent.
"""

import json
import os
from typing import Any, Dict, Optional
import structlog

import stripe

from core.errors import LedgerError
from persistence.models import CreditTransaction
from .purchases import PurchaseLedger

logger = structlog.get_logger()

# Seconds a signed webhook stays valid
WEBHOOK_TOLERANCE = 300


class StripeIntegrationError(LedgerError):
    """Raised when Stripe integration fails."""
    code = "STRIPE_ERROR"


class StripeIntegration:
    """
    Bridge between the purchase ledger and Stripe.

    Without an API key the integration runs in mock mode: payment intents
    are fabricated locally so the purchase flow can be exercised end to end.
    """

    def __init__(
        self,
        purchases: PurchaseLedger,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
    ):
        self.purchases = purchases
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET")
        self.currency = currency
        self._initialized = False

        if self.api_key:
            stripe.api_key = self.api_key
            self._initialized = True
            logger.info("stripe_integration_initialized")
        else:
            logger.warning("stripe_not_configured", webhook_secret_set=bool(self.webhook_secret))

    @property
    def is_available(self) -> bool:
        return self._initialized

    def create_payment_intent(self, transaction: CreditTransaction) -> Dict[str, Any]:
        """
        Create a PaymentIntent for a pending purchase.

        The transaction id travels in the intent metadata and comes back in
        the webhook.
        """
        amount_cents = int(transaction.amount_usd * 100)

        if not self._initialized:
            intent = {
                "id": f"pi_mock_{transaction.id[:8]}",
                "client_secret": f"pi_mock_{transaction.id[:8]}_secret",
                "amount": amount_cents,
                "currency": self.currency,
                "status": "requires_payment_method",
            }
            self.purchases.attach_payment_intent(transaction.id, intent["id"])
            return intent

        try:
            payment_intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self.currency,
                metadata={
                    "transaction_id": transaction.id,
                    "account_id": transaction.account_id,
                    "credits": str(transaction.credits_purchased),
                },
                idempotency_key=f"purchase_{transaction.id}",
            )
        except stripe.StripeError as e:
            logger.error("stripe_payment_intent_failed", transaction_id=transaction.id, error=str(e))
            raise StripeIntegrationError(f"Failed to create payment intent: {e}")

        self.purchases.attach_payment_intent(transaction.id, payment_intent.id)
        logger.info(
            "stripe_payment_intent_created",
            payment_intent_id=payment_intent.id,
            transaction_id=transaction.id,
            amount_cents=amount_cents,
        )
        return {
            "id": payment_intent.id,
            "client_secret": payment_intent.client_secret,
            "amount": amount_cents,
            "currency": self.currency,
            "status": payment_intent.status,
        }

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and process a Stripe webhook.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            Processed event data
        """
        if not self.webhook_secret:
            logger.warning("stripe_webhook_not_configured")
            raise StripeIntegrationError("Webhook not configured")
        if not signature:
            raise StripeIntegrationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            logger.error("stripe_webhook_payload_undecodable")
            raise StripeIntegrationError("Webhook payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, WEBHOOK_TOLERANCE)
        except stripe.SignatureVerificationError:
            logger.error("stripe_webhook_signature_invalid")
            raise StripeIntegrationError("Invalid webhook signature")

        try:
            event = json.loads(body)
        except ValueError as e:
            raise StripeIntegrationError(f"Invalid webhook payload: {e}")

        event_type = event.get("type")
        logger.info("stripe_webhook_received", event_type=event_type, event_id=event.get("id"))

        intent = (event.get("data") or {}).get("object") or {}
        if event_type == "payment_intent.succeeded":
            return self._handle_payment_succeeded(intent)
        if event_type == "payment_intent.payment_failed":
            return self._handle_payment_failed(intent)

        return {"event_type": event_type, "processed": False}

    def _transaction_id(self, intent: Dict[str, Any]) -> Optional[str]:
        transaction_id = (intent.get("metadata") or {}).get("transaction_id")
        if not transaction_id:
            logger.warning("stripe_webhook_missing_transaction", payment_intent_id=intent.get("id"))
        return transaction_id

    def _handle_payment_succeeded(self, intent: Dict[str, Any]) -> Dict[str, Any]:
        transaction_id = self._transaction_id(intent)
        if not transaction_id:
            return {"event_type": "payment_intent.succeeded", "processed": False}

        charge_id = intent.get("latest_charge") or intent.get("id")
        transaction = self.purchases.complete_purchase(transaction_id, charge_id)
        return {
            "event_type": "payment_intent.succeeded",
            "processed": True,
            "transaction": transaction.to_dict(),
        }

    def _handle_payment_failed(self, intent: Dict[str, Any]) -> Dict[str, Any]:
        transaction_id = self._transaction_id(intent)
        if not transaction_id:
            return {"event_type": "payment_intent.payment_failed", "processed": False}

        reason = (intent.get("last_payment_error") or {}).get("message", "Payment failed")
        transaction = self.purchases.fail_purchase(transaction_id, reason)
        return {
            "event_type": "payment_intent.payment_failed",
            "processed": True,
            "transaction": transaction.to_dict(),
        }
