"""
Stripe payment provider implementation.

Implements PaymentProvider using Stripe Checkout in payment mode.
Handles webhook signature verification and session retrieval.
"""
import json
import os
from typing import Any, Dict, Optional

import stripe

from unlocks.features.purchases.provider import (
    CheckoutSession,
    PaymentProviderError,
    PaymentWebhookError,
)


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def create_checkout_session(
        self,
        purchase_id: str,
        amount: int,
        currency: str,
        product_name: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """Create Stripe checkout session for a one-time payment."""
        session_metadata = dict(metadata or {})
        session_metadata["purchase_id"] = purchase_id
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {"name": product_name},
                            "unit_amount": amount,
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=purchase_id,
                metadata=session_metadata,
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe checkout session creation failed: {e}")
        return CheckoutSession(session_id=session.id, url=session.url)

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """Retrieve a Stripe checkout session as a plain dict."""
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe checkout session retrieval failed: {e}")
        # str(StripeObject) is its JSON form
        return json.loads(str(session))

    def verify_webhook(self, body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify Stripe webhook signature and decode the event."""
        if not self.webhook_secret:
            raise PaymentWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise PaymentWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, signature_header, self.webhook_secret)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}")

        # The signature covers the raw body, so decode that rather than the StripeObject
        try:
            event = json.loads(body)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        if not isinstance(event, dict):
            raise PaymentWebhookError("Invalid payload: event is not an object")
        return event
