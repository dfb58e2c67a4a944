"""
Purchase API routes.

Surface:
- POST /api/purchases/checkout: Start a purchase
- POST /api/purchases/webhook: Handle Stripe webhooks
- POST /api/purchases/verify-session: Return-URL fallback confirmation
- GET  /api/purchases/{purchase_id}: Owner-scoped purchase view
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from unlocks.core.auth import get_current_user_id
from unlocks.features.purchases.access import (
    ConsumptionSource,
    ScopeAccessPolicy,
    get_consumption_source,
    get_scope_access,
)
from unlocks.features.purchases.service import (
    PurchaseView,
    get_purchase_view,
    process_webhook_event,
    start_checkout,
    verify_checkout_session,
)
from unlocks.models.purchase import FeatureEntitlement, Purchase


router = APIRouter(prefix="/purchases", tags=["purchases"])


class CheckoutRequest(BaseModel):
    """Request to start a purchase."""
    capability: str
    scope_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class VerifySessionRequest(BaseModel):
    """Checkout session id the buyer returned with."""
    session_id: str
    purchase_id: str


class PurchaseViewResponse(BaseModel):
    purchase: Purchase
    entitlement: Optional[FeatureEntitlement] = None
    has_permission: bool
    outcome: str


class CheckoutResponse(PurchaseViewResponse):
    """Checkout URL is null when the purchase completed immediately."""
    url: Optional[str] = None
    session_id: Optional[str] = None


def _view_response(view: PurchaseView) -> PurchaseViewResponse:
    return PurchaseViewResponse(
        purchase=view.purchase,
        entitlement=view.entitlement,
        has_permission=view.has_permission,
        outcome=view.outcome,
    )


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    scope_access: ScopeAccessPolicy = Depends(get_scope_access),
    consumption: ConsumptionSource = Depends(get_consumption_source),
):
    """
    Start a purchase for the current user.

    Errors:
        400: Unknown capability, or scope_id missing/unexpected for it
        403: User may not purchase for scope_id
        503: Payments disabled, or Stripe unavailable
    """
    result = start_checkout(
        owner_id=user_id,
        capability=body.capability,
        scope_id=body.scope_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        scope_access=scope_access,
        consumption=consumption,
    )
    view = result.view
    return CheckoutResponse(
        purchase=view.purchase,
        entitlement=view.entitlement,
        has_permission=view.has_permission,
        outcome=view.outcome,
        url=result.checkout_url,
        session_id=result.session_id,
    )


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies the signature against STRIPE_WEBHOOK_SECRET and hands confirmed
    or failed payments to the reconciler. Duplicate deliveries return 200.

    Returns:
        {"received": true, "outcome": "completed" | "already_completed" | "stale" | "failed" | "ignored"}

    Errors:
        400: Invalid signature or payload
        404: Event references an unknown purchase
        503: Payments disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    result = process_webhook_event(headers, body)
    return {"received": True, "outcome": result.outcome, "purchase_id": result.purchase_id}


@router.post("/verify-session", response_model=PurchaseViewResponse)
def verify_session(
    body: VerifySessionRequest,
    user_id: str = Depends(get_current_user_id),
    consumption: ConsumptionSource = Depends(get_consumption_source),
):
    """
    Confirm a purchase from the success redirect when the webhook is late.

    Errors:
        400: Session expired or belongs to another purchase
        404: Purchase not found (or not owned by the caller)
        503: Stripe unreachable (retry)
    """
    view = verify_checkout_session(
        owner_id=user_id,
        session_token=body.session_id,
        purchase_id=body.purchase_id,
        consumption=consumption,
    )
    return _view_response(view)


@router.get("/{purchase_id}", response_model=PurchaseViewResponse)
def get_purchase(
    purchase_id: str,
    user_id: str = Depends(get_current_user_id),
    consumption: ConsumptionSource = Depends(get_consumption_source),
):
    return _view_response(get_purchase_view(user_id, purchase_id, consumption))
