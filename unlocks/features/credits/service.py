"""
Credit accountant.

Credits for user-level capabilities are never stored. Each read counts the
completed, scope-less purchases in the ledger and subtracts what the host
application reports as consumed.
"""
from typing import List

from sqlalchemy import func, select

from unlocks.core.database import get_db_session, purchases
from unlocks.core.errors import ValidationError
from unlocks.models.purchase import CreditStatement, CreditSummary, Purchase, PurchaseStatus


def _completed_user_level(owner_id: str, capability: str):
    return (
        (purchases.c.owner_id == owner_id)
        & (purchases.c.capability == capability)
        & (purchases.c.scope_id.is_(None))
        & (purchases.c.status == PurchaseStatus.COMPLETED.value)
    )


def compute_remaining(owner_id: str, capability: str, consumed: int) -> CreditSummary:
    """
    Credit summary for owner_id.

    remaining = max(0, purchased - consumed); has_permission = remaining > 0.
    """
    if consumed < 0:
        raise ValidationError(f"consumed must be >= 0, got {consumed}")

    with get_db_session() as session:
        purchased = session.execute(
            select(func.count()).select_from(purchases).where(_completed_user_level(owner_id, capability))
        ).scalar_one()

    remaining = max(0, purchased - consumed)
    return CreditSummary(
        owner_id=owner_id,
        capability=capability,
        purchased=purchased,
        consumed=consumed,
        remaining=remaining,
        has_permission=remaining > 0,
    )


def get_credit_statement(owner_id: str, capability: str, consumed: int) -> CreditStatement:
    """Summary plus the purchases behind it, newest first."""
    summary = compute_remaining(owner_id, capability, consumed)

    with get_db_session() as session:
        rows = session.execute(
            select(purchases)
            .where(_completed_user_level(owner_id, capability))
            .order_by(purchases.c.completed_at.desc(), purchases.c.created_at.desc())
        ).fetchall()

    history: List[Purchase] = [Purchase.from_row(row) for row in rows]
    return CreditStatement(
        summary=summary,
        total_spent=sum(p.amount for p in history),
        purchases=history,
    )
