"""
Admin-only purchase diagnostics router.

Read-only. Integrity violations are reported for an operator to resolve;
nothing here repairs ledger or entitlement state.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from unlocks.core.admin_auth import AdminActor, require_admin
from unlocks.features.purchases.reconciler import audit_integrity


logger = logging.getLogger("unlocks")

router = APIRouter()


class MissingEntitlement(BaseModel):
    purchase_id: str
    owner_id: str
    scope_id: Optional[str]
    capability: str
    completed_at: Optional[datetime]


class OrphanedEntitlement(BaseModel):
    scope_id: str
    capability: str
    unlocked_at: Optional[datetime]


class IntegrityResponse(BaseModel):
    ok: bool
    completed_without_entitlement: List[MissingEntitlement]
    entitlements_without_purchase: List[OrphanedEntitlement]
    checked_at: datetime


@router.get("/v1/admin/purchases/integrity", response_model=IntegrityResponse)
def purchase_integrity(actor: AdminActor = Depends(require_admin)):
    """
    Compare the purchase ledger against feature entitlements.

    Returns completed book-scoped purchases whose feature is still locked and
    purchased features with no completed purchase.
    """
    report = audit_integrity()

    logger.info(
        "admin.purchases.integrity",
        extra={
            "actor_id": actor.actor_id,
            "missing": len(report.completed_without_entitlement),
            "orphaned": len(report.entitlements_without_purchase),
        },
    )

    return IntegrityResponse(
        ok=report.ok,
        completed_without_entitlement=[
            MissingEntitlement(
                purchase_id=p.id,
                owner_id=p.owner_id,
                scope_id=p.scope_id,
                capability=p.capability,
                completed_at=p.completed_at,
            )
            for p in report.completed_without_entitlement
        ],
        entitlements_without_purchase=[
            OrphanedEntitlement(scope_id=e.scope_id, capability=e.capability, unlocked_at=e.unlocked_at)
            for e in report.entitlements_without_purchase
        ],
        checked_at=datetime.now(timezone.utc),
    )
