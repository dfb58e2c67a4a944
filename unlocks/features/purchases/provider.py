"""
Payment provider protocol.

Defines the interface the purchase flow needs from a payment provider
(Stripe, or a fake in tests) so business logic never imports stripe directly.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol


@dataclass
class CheckoutSession:
    """A hosted checkout session created for one pending purchase."""
    session_id: str
    url: str


class PaymentProvider(Protocol):
    """
    Protocol for one-time payment providers.

    Implementations must handle:
    - Checkout session creation (one purchase per session)
    - Checkout session retrieval (return-URL fallback)
    - Webhook signature verification
    """

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
        """
        Create a checkout session for a single payment.

        The purchase id must travel as the session's client reference so
        confirmations can be correlated back to the ledger.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """
        Fetch a checkout session as a plain dict.

        Raises:
            PaymentProviderError: If the provider cannot be reached or rejects the id
        """
        ...

    def verify_webhook(self, body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the webhook signature and return the event as a plain dict.

        Raises:
            PaymentWebhookError: If the signature is missing/invalid or the body is not an event
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentWebhookError(PaymentProviderError):
    """Exception for webhook verification errors."""
    pass
