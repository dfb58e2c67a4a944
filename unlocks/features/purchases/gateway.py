"""
Payment confirmation gateway.

Turns provider evidence into a closed set of outcomes the reconciler can act on.
Two channels feed it:
- webhook: signed push events from the provider
- fallback: the buyer returns to the success URL with a checkout session id and
  the service asks the provider directly

The gateway never writes to the ledger; it only decides what the evidence says.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from unlocks.features.purchases.provider import (
    PaymentProvider,
    PaymentProviderError,
    PaymentWebhookError,
)


logger = logging.getLogger(__name__)

CHANNEL_WEBHOOK = "webhook"
CHANNEL_FALLBACK = "fallback"

PAID_PAYMENT_STATUSES = ("paid", "no_payment_required")


@dataclass(frozen=True)
class ConfirmedPayment:
    """The provider says purchase_id has been paid."""
    purchase_id: str
    provider_reference: str
    channel: str


@dataclass(frozen=True)
class PaymentFailed:
    """The provider says purchase_id will not be paid (expired or declined)."""
    purchase_id: str
    channel: str
    reason: str


@dataclass(frozen=True)
class NotYetConfirmed:
    """Fallback only: the session exists but payment has not settled yet."""
    purchase_id: str
    status: Optional[str]
    payment_status: Optional[str]


@dataclass(frozen=True)
class Ignored:
    """Authentic event that carries no purchase outcome."""
    event_type: str


@dataclass(frozen=True)
class Rejected:
    """Evidence that cannot be trusted or used; retryable only for provider outages."""
    reason: str
    retryable: bool = False


WebhookResult = Union[ConfirmedPayment, PaymentFailed, Ignored, Rejected]
FallbackResult = Union[ConfirmedPayment, NotYetConfirmed, Rejected]


def _purchase_id_of(session: Dict[str, Any]) -> Optional[str]:
    purchase_id = session.get("client_reference_id")
    if purchase_id:
        return purchase_id
    metadata = session.get("metadata")
    if not isinstance(metadata, dict):
        return None
    return metadata.get("purchase_id")


def _provider_reference_of(session: Dict[str, Any]) -> str:
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    return payment_intent or session.get("id") or ""


class PaymentConfirmationGateway:
    """Classifies provider events and checkout sessions into purchase outcomes."""

    def __init__(self, provider: PaymentProvider):
        self.provider = provider

    def handle_provider_event(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Verify and classify a webhook delivery.

        Returns:
            ConfirmedPayment for paid checkout sessions, PaymentFailed for expired
            or failed async payments, Ignored for anything else authentic, and
            Rejected when the signature does not verify.
        """
        try:
            event = self.provider.verify_webhook(raw_payload, signature_header)
        except PaymentWebhookError as e:
            logger.warning("[gateway] webhook rejected", extra={"channel": CHANNEL_WEBHOOK, "error_code": "signature_invalid"})
            return Rejected(reason=str(e), retryable=False)

        event_type = event.get("type") or "unknown"
        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            # Authentic but not shaped like a session event
            return Ignored(event_type=event_type)

        if event_type == "checkout.session.completed":
            if session.get("payment_status") not in PAID_PAYMENT_STATUSES:
                # Delayed payment methods complete later via async_payment_succeeded
                return Ignored(event_type=event_type)
            return self._confirmed_or_ignored(event_type, session)

        if event_type == "checkout.session.async_payment_succeeded":
            return self._confirmed_or_ignored(event_type, session)

        if event_type in ("checkout.session.async_payment_failed", "checkout.session.expired"):
            purchase_id = _purchase_id_of(session)
            if not purchase_id:
                return Ignored(event_type=event_type)
            reason = "expired" if event_type.endswith("expired") else "payment_failed"
            return PaymentFailed(purchase_id=purchase_id, channel=CHANNEL_WEBHOOK, reason=reason)

        return Ignored(event_type=event_type)

    def _confirmed_or_ignored(self, event_type: str, session: Dict[str, Any]) -> WebhookResult:
        purchase_id = _purchase_id_of(session)
        if not purchase_id:
            logger.warning(
                "[gateway] paid session without purchase reference",
                extra={"event_type": event_type, "channel": CHANNEL_WEBHOOK},
            )
            return Ignored(event_type=event_type)
        return ConfirmedPayment(
            purchase_id=purchase_id,
            provider_reference=_provider_reference_of(session),
            channel=CHANNEL_WEBHOOK,
        )

    def verify_session_fallback(self, session_token: str, purchase_id: str) -> FallbackResult:
        """
        Ask the provider about a checkout session the buyer came back with.

        The session must reference purchase_id; a session for some other
        purchase is rejected rather than trusted.
        """
        if not session_token:
            return Rejected(reason="missing session id", retryable=False)

        try:
            session = self.provider.retrieve_checkout_session(session_token)
        except PaymentProviderError as e:
            logger.warning(
                "[gateway] session lookup failed",
                extra={"purchase_id": purchase_id, "channel": CHANNEL_FALLBACK},
            )
            return Rejected(reason=str(e), retryable=True)

        referenced = _purchase_id_of(session)
        if referenced != purchase_id:
            return Rejected(reason="session does not belong to this purchase", retryable=False)

        status = session.get("status")
        payment_status = session.get("payment_status")

        if status == "expired":
            return Rejected(reason="checkout session expired", retryable=False)

        if status not in ("open", "expired") and (payment_status in PAID_PAYMENT_STATUSES or status == "complete"):
            return ConfirmedPayment(
                purchase_id=purchase_id,
                provider_reference=_provider_reference_of(session),
                channel=CHANNEL_FALLBACK,
            )

        return NotYetConfirmed(purchase_id=purchase_id, status=status, payment_status=payment_status)
