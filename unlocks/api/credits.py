"""
Credit API routes.

- GET /api/credits/{capability}: remaining credits for a user-level capability
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from unlocks.core.auth import get_current_user_id
from unlocks.core.errors import ValidationError
from unlocks.features.credits.service import compute_remaining, get_credit_statement
from unlocks.features.purchases.access import ConsumptionSource, get_consumption_source
from unlocks.features.purchases.catalog import get_capability
from unlocks.models.purchase import Purchase


router = APIRouter(prefix="/credits", tags=["credits"])


class CreditResponse(BaseModel):
    capability: str
    purchased: int
    consumed: int
    remaining: int
    has_permission: bool
    total_spent: Optional[int] = None
    purchases: Optional[List[Purchase]] = None


@router.get("/{capability}", response_model=CreditResponse)
def get_credits(
    capability: str,
    include_purchases: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    consumption: ConsumptionSource = Depends(get_consumption_source),
):
    """
    Credit summary, optionally with the purchases behind it (newest first).

    Errors:
        400: Unknown or book-scoped capability
    """
    cap = get_capability(capability)
    if cap.book_scoped:
        raise ValidationError(f"{capability} is book-scoped and has no credits", code="not_a_credit")

    consumed = consumption.count_consumed(user_id, capability)
    if include_purchases:
        statement = get_credit_statement(user_id, capability, consumed)
        summary = statement.summary
        return CreditResponse(
            capability=capability,
            purchased=summary.purchased,
            consumed=summary.consumed,
            remaining=summary.remaining,
            has_permission=summary.has_permission,
            total_spent=statement.total_spent,
            purchases=statement.purchases,
        )

    summary = compute_remaining(user_id, capability, consumed)
    return CreditResponse(
        capability=capability,
        purchased=summary.purchased,
        consumed=summary.consumed,
        remaining=summary.remaining,
        has_permission=summary.has_permission,
    )
