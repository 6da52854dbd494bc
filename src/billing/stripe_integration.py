"""
Stripe Integration for the Quota Ledger

Integrates with Stripe Checkout for:
- Opening a payment and its hosted checkout session
- Verifying webhook signatures
- Settling checkout outcomes through the SettlementGateway

Stripe redelivers webhooks, so every handler relies on the gateway's
idempotency guard: a duplicate delivery is acknowledged and ignored.
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import structlog
import stripe

from ledger.errors import AlreadyProcessedError, NotFoundError
from persistence.models import PaymentStatus

from .settlement import SettlementGateway

logger = structlog.get_logger()

PAYMENT_SOURCE = "stripe"
WEBHOOK_TOLERANCE_SECONDS = 300


class StripeIntegrationError(Exception):
    """Raised when Stripe integration fails."""
    pass


@dataclass
class CheckoutSession:
    """A payment together with the Stripe session that collects it."""
    payment_id: str
    session_id: str
    url: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "session_id": self.session_id,
            "url": self.url,
        }


class StripeIntegration:
    """
    Bridge between Stripe Checkout and the settlement gateway.
    """

    # Checkout events and the payment status they settle to
    EVENT_OUTCOMES = {
        "checkout.session.completed": PaymentStatus.SUCCESS,
        "checkout.session.async_payment_succeeded": PaymentStatus.SUCCESS,
        "checkout.session.async_payment_failed": PaymentStatus.FAILED,
        "checkout.session.expired": PaymentStatus.CANCELED,
    }

    def __init__(
        self,
        settlement: SettlementGateway,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
    ):
        """
        Initialize Stripe integration.

        Args:
            settlement: Gateway that owns the payment state machine
            api_key: Stripe secret key (or STRIPE_API_KEY env var)
            webhook_secret: Stripe webhook signing secret (or STRIPE_WEBHOOK_SECRET env var)
            currency: Currency for checkout line items
        """
        self.settlement = settlement
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET")
        self.currency = currency

        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("stripe_integration_initialized")
        else:
            logger.warning(
                "stripe_not_configured",
                api_key_set=bool(self.api_key),
                webhook_secret_set=bool(self.webhook_secret),
            )

    @property
    def is_available(self) -> bool:
        """Check if checkout sessions can be created."""
        return bool(self.api_key)

    def create_checkout_session(
        self,
        user_id: str,
        product_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Open a waiting payment and a Stripe checkout session for it.

        The payment id travels in the session metadata and comes back in the
        webhook.
        """
        if not self.is_available:
            raise StripeIntegrationError("Stripe API key not configured")

        product = self.settlement.price_table.get_product(product_id)
        if product is None:
            raise NotFoundError(f"product {product_id} not found")

        payment_id = self.settlement.create_payment(user_id, product_id, PAYMENT_SOURCE)

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                line_items=[{
                    "quantity": 1,
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": product.retail_price,
                        "product_data": {"name": product.name},
                    },
                }],
                metadata={
                    "payment_id": payment_id,
                    "user_id": user_id,
                    "product_id": product_id,
                },
            )
        except stripe.StripeError as e:
            logger.error("stripe_checkout_create_failed", payment_id=payment_id, error=str(e))
            self.settlement.complete_payment(
                user_id, payment_id, PaymentStatus.FAILED, note=f"checkout creation failed: {e}"
            )
            raise StripeIntegrationError(f"Failed to create checkout session: {e}")

        logger.info(
            "stripe_checkout_created",
            payment_id=payment_id,
            session_id=session["id"],
            user_id=user_id,
            product_id=product_id,
        )
        return CheckoutSession(payment_id=payment_id, session_id=session["id"], url=session.get("url"))

    def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Handle Stripe webhook events.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Processed event data
        """
        if not self.webhook_secret:
            logger.warning("stripe_webhook_not_configured")
            raise StripeIntegrationError("Webhook not configured")

        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError:
            logger.error("stripe_webhook_signature_invalid")
            raise StripeIntegrationError("Invalid webhook signature")

        event = json.loads(body)
        event_type = event.get("type", "")
        logger.info("stripe_webhook_received", event_type=event_type, event_id=event.get("id"))

        outcome = self.EVENT_OUTCOMES.get(event_type)
        if outcome is None:
            return {"event_type": event_type, "processed": False}

        session = event.get("data", {}).get("object", {})
        return self._settle_session(event_type, session, outcome)

    def _settle_session(self, event_type: str, session: Dict[str, Any], outcome: PaymentStatus) -> Dict[str, Any]:
        metadata = session.get("metadata") or {}
        payment_id = metadata.get("payment_id")
        user_id = metadata.get("user_id") or session.get("client_reference_id")
        if not payment_id or not user_id:
            logger.error("stripe_session_missing_metadata", session_id=session.get("id"))
            raise StripeIntegrationError("Checkout session carries no payment metadata")

        # Delayed payment methods report completion before the money arrives
        if event_type == "checkout.session.completed" and session.get("payment_status") != "paid":
            logger.info("stripe_payment_pending", payment_id=payment_id, session_id=session.get("id"))
            return {"event_type": event_type, "payment_id": payment_id, "processed": False}

        created = session.get("created")
        try:
            event_id = self.settlement.complete_payment(
                user_id,
                payment_id,
                outcome,
                provider_fields={
                    "session_id": session.get("id"),
                    "payment_intent": session.get("payment_intent"),
                    "amount_total": session.get("amount_total"),
                    "currency": session.get("currency"),
                    "customer_email": (session.get("customer_details") or {}).get("email"),
                },
                environment="production" if session.get("livemode") else "sandbox",
                purchase_at=datetime.fromtimestamp(created, timezone.utc) if created else None,
            )
        except AlreadyProcessedError as e:
            logger.info("stripe_webhook_duplicate", payment_id=payment_id, status=e.status)
            return {
                "event_type": event_type,
                "payment_id": payment_id,
                "processed": False,
                "duplicate": True,
            }

        return {
            "event_type": event_type,
            "payment_id": payment_id,
            "status": outcome.value,
            "event_id": event_id,
            "processed": True,
        }
