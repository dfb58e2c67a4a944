"""
Purchase ledger.

Durable record of purchase attempts. The ledger only inserts pending rows and
reads; every status transition belongs to the reconciler.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import insert, select

from unlocks.core.database import get_db_session, purchases
from unlocks.core.errors import PurchaseNotFoundError, ValidationError
from unlocks.models.purchase import Purchase, PurchaseStatus


logger = logging.getLogger(__name__)


def create_pending(
    owner_id: str,
    scope_id: Optional[str],
    capability: str,
    amount: int,
    currency: str = "USD",
    payment_method: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Purchase:
    """
    Insert a pending purchase.

    Raises:
        ValidationError: negative amount, or missing owner/capability
    """
    if not owner_id:
        raise ValidationError("owner_id is required")
    if not capability:
        raise ValidationError("capability is required")
    if amount < 0:
        raise ValidationError(f"amount must be >= 0, got {amount}", code="invalid_amount")

    created_at = now or datetime.now(timezone.utc)
    purchase_id = str(uuid.uuid4())

    with get_db_session() as session:
        session.execute(
            insert(purchases).values(
                id=purchase_id,
                owner_id=owner_id,
                scope_id=scope_id or None,
                capability=capability,
                amount=amount,
                currency=currency.upper(),
                payment_method=payment_method,
                status=PurchaseStatus.PENDING.value,
                created_at=created_at,
                updated_at=created_at,
            )
        )
        row = session.execute(select(purchases).where(purchases.c.id == purchase_id)).first()
        purchase = Purchase.from_row(row)

    logger.info(
        "[ledger] pending purchase created",
        extra={
            "purchase_id": purchase_id,
            "owner_id": owner_id,
            "scope_id": scope_id,
            "capability": capability,
        },
    )
    return purchase


def get_purchase(purchase_id: str) -> Purchase:
    """Load one purchase or raise PurchaseNotFoundError."""
    with get_db_session() as session:
        row = session.execute(
            select(purchases).where(purchases.c.id == purchase_id)
        ).first()

    if row is None:
        raise PurchaseNotFoundError(f"Purchase not found: {purchase_id}")
    return Purchase.from_row(row)


def get_owned_purchase(owner_id: str, purchase_id: str) -> Purchase:
    """Load a purchase owned by owner_id; someone else's purchase reads as missing."""
    purchase = get_purchase(purchase_id)
    if purchase.owner_id != owner_id:
        raise PurchaseNotFoundError(f"Purchase not found: {purchase_id}")
    return purchase


def list_by_owner(owner_id: str, capability: str) -> List[Purchase]:
    """All purchases of owner_id for capability, any status. Order is unspecified."""
    with get_db_session() as session:
        rows = session.execute(
            select(purchases)
            .where(purchases.c.owner_id == owner_id)
            .where(purchases.c.capability == capability)
        ).fetchall()
    return [Purchase.from_row(row) for row in rows]
