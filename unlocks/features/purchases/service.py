"""
Purchase service orchestrator.

Coordinates:
- Checkout start (pending purchase + Stripe Checkout, or instant completion
  for free capabilities and simulated mode)
- Webhook processing
- Return-URL session verification
- Purchase views for the owner

All Stripe-specific code is in stripe_provider.py; all status writes go
through reconciler.py.
"""
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from unlocks.core.config import get_base_url, settings
from unlocks.core.errors import (
    PaymentsDisabledError,
    PermissionError,
    ProviderUnavailableError,
    SignatureInvalidError,
    ValidationError,
)
from unlocks.core.metrics import payment_webhooks_total
from unlocks.features.credits.service import compute_remaining
from unlocks.features.entitlements.service import get_entitlement
from unlocks.features.purchases import ledger, reconciler
from unlocks.features.purchases.access import ConsumptionSource, NoConsumption, OpenScopeAccess, ScopeAccessPolicy
from unlocks.features.purchases.catalog import get_capability, validate_scope
from unlocks.features.purchases.gateway import (
    ConfirmedPayment,
    Ignored,
    NotYetConfirmed,
    PaymentConfirmationGateway,
    PaymentFailed,
    Rejected,
)
from unlocks.features.purchases.provider import PaymentProvider, PaymentProviderError
from unlocks.features.purchases.stripe_provider import StripeProvider
from unlocks.models.purchase import FeatureEntitlement, Purchase, PurchaseStatus


logger = logging.getLogger(__name__)


@dataclass
class PurchaseView:
    purchase: Purchase
    entitlement: Optional[FeatureEntitlement]
    has_permission: bool
    outcome: str


@dataclass
class CheckoutResult:
    view: PurchaseView
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class WebhookOutcome:
    outcome: str
    event_type: Optional[str] = None
    purchase_id: Optional[str] = None


def payments_enabled() -> bool:
    """Check if payments are enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def simulated_purchases_enabled() -> bool:
    """Dev/test mode where purchases complete without a provider."""
    value = os.getenv("USE_SIMULATED_PURCHASES")
    if value is None:
        return settings.USE_SIMULATED_PURCHASES
    return value.strip().lower() in ("1", "true", "yes")


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if payments are enabled."""
    if not payments_enabled():
        return None
    try:
        return StripeProvider()
    except PaymentProviderError:
        return None


def get_gateway() -> Optional[PaymentConfirmationGateway]:
    provider = get_provider()
    if provider is None:
        return None
    return PaymentConfirmationGateway(provider)


def _view(purchase: Purchase, outcome: str, consumption: Optional[ConsumptionSource] = None) -> PurchaseView:
    if purchase.is_user_level:
        consumption = consumption or NoConsumption()
        summary = compute_remaining(
            purchase.owner_id,
            purchase.capability,
            consumption.count_consumed(purchase.owner_id, purchase.capability),
        )
        return PurchaseView(purchase=purchase, entitlement=None, has_permission=summary.has_permission, outcome=outcome)

    entitlement = get_entitlement(purchase.scope_id, purchase.capability)
    return PurchaseView(
        purchase=purchase,
        entitlement=entitlement,
        has_permission=entitlement.is_unlocked,
        outcome=outcome,
    )


def _default_success_url(purchase_id: str) -> str:
    # Stripe substitutes {CHECKOUT_SESSION_ID} on redirect
    return f"{get_base_url()}/dashboard?session_id={{CHECKOUT_SESSION_ID}}&purchase_id={purchase_id}"


def _default_cancel_url(scope_id: Optional[str]) -> str:
    if scope_id:
        return f"{get_base_url()}/dashboard/book/{scope_id}"
    return f"{get_base_url()}/dashboard"


def start_checkout(
    owner_id: str,
    capability: str,
    scope_id: Optional[str] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    scope_access: Optional[ScopeAccessPolicy] = None,
    consumption: Optional[ConsumptionSource] = None,
) -> CheckoutResult:
    """
    Start a purchase.

    Free capabilities and simulated mode complete immediately through the
    reconciler; otherwise a Stripe Checkout Session is created for the new
    pending purchase.

    Raises:
        ValidationError: unknown capability or wrong scope for it
        PermissionError: owner may not buy for scope_id
        PaymentsDisabledError: neither Stripe nor simulated purchases configured
        ProviderUnavailableError: Stripe session creation failed
    """
    cap = get_capability(capability)
    validate_scope(cap, scope_id)

    scope_access = scope_access or OpenScopeAccess()
    if scope_id and not scope_access.can_access(owner_id, scope_id):
        raise PermissionError(f"Not allowed to purchase for scope {scope_id}")

    if cap.is_free:
        payment_method = "free"
    elif simulated_purchases_enabled():
        payment_method = "simulated"
    elif payments_enabled():
        payment_method = "stripe"
    else:
        raise PaymentsDisabledError("Payments are not configured")

    purchase = ledger.create_pending(
        owner_id,
        scope_id,
        cap.name,
        cap.price,
        currency=settings.DEFAULT_CURRENCY,
        payment_method=payment_method,
    )

    if payment_method != "stripe":
        reference = "free" if payment_method == "free" else f"sim_{purchase.id}"
        result = reconciler.complete(
            ConfirmedPayment(purchase_id=purchase.id, provider_reference=reference, channel=payment_method)
        )
        return CheckoutResult(view=_view(result.purchase, result.outcome.value, consumption))

    provider = get_provider()
    if provider is None:
        reconciler.fail(purchase.id)
        raise PaymentsDisabledError("Payment provider unavailable")

    try:
        session = provider.create_checkout_session(
            purchase_id=purchase.id,
            amount=cap.price,
            currency=purchase.currency,
            product_name=cap.display_name,
            success_url=success_url or _default_success_url(purchase.id),
            cancel_url=cancel_url or _default_cancel_url(scope_id),
            metadata={"owner_id": owner_id, "capability": cap.name, "scope_id": scope_id or ""},
        )
    except PaymentProviderError as e:
        # A pending row without a checkout session can never be paid
        reconciler.fail(purchase.id)
        raise ProviderUnavailableError(str(e))

    logger.info(
        "[purchases] checkout session created",
        extra={"purchase_id": purchase.id, "owner_id": owner_id, "capability": cap.name},
    )
    return CheckoutResult(
        view=_view(purchase, PurchaseStatus.PENDING.value, consumption),
        checkout_url=session.url,
        session_id=session.session_id,
    )


def process_webhook_event(headers: Dict[str, str], body: bytes) -> WebhookOutcome:
    """
    Verify a provider webhook and apply it.

    Duplicates and late deliveries are absorbed by the reconciler and still
    return an outcome, so the provider stops redelivering.

    Raises:
        PaymentsDisabledError: Stripe not configured
        SignatureInvalidError: signature verification failed
        PurchaseNotFoundError: the event references an unknown purchase
    """
    gateway = get_gateway()
    if gateway is None:
        raise PaymentsDisabledError("Payments are not configured")

    signature = headers.get("stripe-signature") or headers.get("Stripe-Signature")
    result = gateway.handle_provider_event(body, signature)

    if isinstance(result, Rejected):
        payment_webhooks_total.inc({"outcome": "rejected"})
        raise SignatureInvalidError(result.reason)

    if isinstance(result, ConfirmedPayment):
        outcome = reconciler.complete(result).outcome.value
        webhook_outcome = WebhookOutcome(outcome=outcome, purchase_id=result.purchase_id)
    elif isinstance(result, PaymentFailed):
        reconciler.fail(result.purchase_id)
        webhook_outcome = WebhookOutcome(outcome="failed", purchase_id=result.purchase_id)
    elif isinstance(result, Ignored):
        webhook_outcome = WebhookOutcome(outcome="ignored", event_type=result.event_type)
    else:
        raise TypeError(f"Unexpected gateway result: {result!r}")

    payment_webhooks_total.inc({"outcome": webhook_outcome.outcome})
    return webhook_outcome


def verify_checkout_session(
    owner_id: str,
    session_token: str,
    purchase_id: str,
    consumption: Optional[ConsumptionSource] = None,
) -> PurchaseView:
    """
    Return-URL fallback: confirm a purchase by asking the provider directly.

    The provider call happens before any write; a purchase that is already
    settled is returned as-is without contacting the provider.

    Raises:
        PurchaseNotFoundError: unknown purchase, or not owned by owner_id
        ValidationError: the provider rejected the session for this purchase
        ProviderUnavailableError: the provider could not be reached (retry)
        PaymentsDisabledError: Stripe not configured
    """
    purchase = ledger.get_owned_purchase(owner_id, purchase_id)

    if purchase.status == PurchaseStatus.COMPLETED:
        return _view(purchase, reconciler.ReconciliationOutcome.ALREADY_COMPLETED.value, consumption)
    if purchase.status in (PurchaseStatus.FAILED, PurchaseStatus.REFUNDED):
        return _view(purchase, reconciler.ReconciliationOutcome.STALE.value, consumption)

    gateway = get_gateway()
    if gateway is None:
        raise PaymentsDisabledError("Payments are not configured")

    result = gateway.verify_session_fallback(session_token, purchase_id)

    if isinstance(result, Rejected):
        if result.retryable:
            raise ProviderUnavailableError(result.reason)
        raise ValidationError(result.reason, code="session_rejected")

    if isinstance(result, NotYetConfirmed):
        return _view(purchase, PurchaseStatus.PENDING.value, consumption)

    reconciled = reconciler.complete(result)
    return _view(reconciled.purchase, reconciled.outcome.value, consumption)


def get_purchase_view(
    owner_id: str,
    purchase_id: str,
    consumption: Optional[ConsumptionSource] = None,
) -> PurchaseView:
    purchase = ledger.get_owned_purchase(owner_id, purchase_id)
    return _view(purchase, purchase.status.value, consumption)
