"""
Entitlement reconciler.

The only writer of purchase status and of purchased entitlements. Both
confirmation channels (webhook and return-URL fallback) land here, in any
order and any number of times, so every transition is a compare-and-set on
`purchases.status`:

    pending -> completed   (complete)
    pending -> failed      (fail)

Completion wins: a failure signal arriving after completion is a no-op, and a
confirmation arriving after failure is reported as stale, never applied.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import and_, exists, select, update

from unlocks.core.database import feature_entitlements, get_db_session, purchases
from unlocks.core.errors import DataIntegrityError, PurchaseNotFoundError
from unlocks.core.logging import log_event
from unlocks.core.metrics import purchase_failures_total, purchase_reconciliations_total
from unlocks.features.entitlements.service import upsert_purchased
from unlocks.features.purchases.gateway import ConfirmedPayment
from unlocks.models.purchase import (
    EntitlementStatus,
    FeatureEntitlement,
    Purchase,
    PurchaseStatus,
)


logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    STALE = "stale"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    purchase: Purchase
    entitlement: Optional[FeatureEntitlement] = None


@dataclass
class IntegrityReport:
    """Disagreements between the ledger and the entitlement store."""
    completed_without_entitlement: List[Purchase] = field(default_factory=list)
    entitlements_without_purchase: List[FeatureEntitlement] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.completed_without_entitlement and not self.entitlements_without_purchase


def _load_purchase(session, purchase_id: str) -> Optional[Purchase]:
    row = session.execute(select(purchases).where(purchases.c.id == purchase_id)).first()
    return Purchase.from_row(row) if row is not None else None


def _load_entitlement(session, purchase: Purchase) -> Optional[FeatureEntitlement]:
    if purchase.is_user_level:
        return None
    row = session.execute(
        select(feature_entitlements)
        .where(feature_entitlements.c.scope_id == purchase.scope_id)
        .where(feature_entitlements.c.capability == purchase.capability)
    ).first()
    if row is None:
        return FeatureEntitlement.locked(purchase.scope_id, purchase.capability)
    return FeatureEntitlement.from_row(row)


def complete(confirmed: ConfirmedPayment, *, now: Optional[datetime] = None) -> ReconciliationResult:
    """
    Apply a confirmed payment to the ledger and the entitlement store.

    Safe to call any number of times, from either channel, concurrently.
    Exactly one call performs the transition; the rest report already_completed.

    Raises:
        PurchaseNotFoundError: no purchase with confirmed.purchase_id
        DataIntegrityError: purchase is completed but its entitlement is not purchased
    """
    now = now or datetime.now(timezone.utc)
    purchase_id = confirmed.purchase_id

    with get_db_session() as session:
        # Compare-and-set first so concurrent callers serialize on the row
        transitioned = session.execute(
            update(purchases)
            .where(purchases.c.id == purchase_id)
            .where(purchases.c.status == PurchaseStatus.PENDING.value)
            .values(
                status=PurchaseStatus.COMPLETED.value,
                completed_at=now,
                provider_reference=confirmed.provider_reference,
                updated_at=now,
            )
        ).rowcount == 1

        purchase = _load_purchase(session, purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(f"Purchase not found: {purchase_id}")

        if transitioned:
            if not purchase.is_user_level:
                upsert_purchased(
                    session,
                    purchase.scope_id,
                    purchase.capability,
                    unlocked_at=now,
                    price=purchase.amount,
                )
            outcome = ReconciliationOutcome.COMPLETED
        elif purchase.status == PurchaseStatus.COMPLETED:
            outcome = ReconciliationOutcome.ALREADY_COMPLETED
        else:
            outcome = ReconciliationOutcome.STALE

        entitlement = _load_entitlement(session, purchase)

        if (
            outcome == ReconciliationOutcome.ALREADY_COMPLETED
            and entitlement is not None
            and not entitlement.is_unlocked
        ):
            log_event(
                "error",
                "reconcile.integrity_violation",
                owner_id=purchase.owner_id,
                purchase_id=purchase_id,
                error_code=DataIntegrityError.code,
                extra={"scope_id": purchase.scope_id, "capability": purchase.capability},
            )
            raise DataIntegrityError(
                f"Purchase {purchase_id} is completed but {purchase.scope_id}/{purchase.capability} is not unlocked"
            )

    purchase_reconciliations_total.inc({"outcome": outcome.value, "channel": confirmed.channel})

    if outcome == ReconciliationOutcome.STALE:
        log_event(
            "warning",
            "reconcile.stale_confirmation",
            owner_id=purchase.owner_id,
            purchase_id=purchase_id,
            extra={
                "status": purchase.status.value,
                "channel": confirmed.channel,
                "provider_reference": confirmed.provider_reference,
            },
        )
    else:
        log_event(
            "info",
            f"reconcile.{outcome.value}",
            owner_id=purchase.owner_id,
            purchase_id=purchase_id,
            extra={
                "scope_id": purchase.scope_id,
                "capability": purchase.capability,
                "channel": confirmed.channel,
            },
        )

    return ReconciliationResult(outcome=outcome, purchase=purchase, entitlement=entitlement)


def fail(purchase_id: str, *, now: Optional[datetime] = None) -> None:
    """
    Mark a pending purchase failed.

    No-op when the purchase is already completed, failed or refunded.

    Raises:
        PurchaseNotFoundError: no purchase with purchase_id
    """
    now = now or datetime.now(timezone.utc)

    with get_db_session() as session:
        transitioned = session.execute(
            update(purchases)
            .where(purchases.c.id == purchase_id)
            .where(purchases.c.status == PurchaseStatus.PENDING.value)
            .values(status=PurchaseStatus.FAILED.value, updated_at=now)
        ).rowcount == 1

        if not transitioned:
            current = session.execute(
                select(purchases.c.status).where(purchases.c.id == purchase_id)
            ).first()
            if current is None:
                raise PurchaseNotFoundError(f"Purchase not found: {purchase_id}")

    if transitioned:
        purchase_failures_total.inc({"outcome": "failed"})
        log_event("info", "reconcile.failed", purchase_id=purchase_id)
    else:
        purchase_failures_total.inc({"outcome": "ignored"})
        logger.info(
            "[reconciler] failure signal ignored",
            extra={"purchase_id": purchase_id, "outcome": current.status},
        )


def audit_integrity() -> IntegrityReport:
    """
    Find ledger/entitlement disagreements. Read-only; nothing is repaired.

    Reports completed book-scoped purchases whose entitlement is missing or
    locked, and purchased entitlements with no completed purchase behind them.
    """
    report = IntegrityReport()

    with get_db_session() as session:
        unlocked = exists().where(
            and_(
                feature_entitlements.c.scope_id == purchases.c.scope_id,
                feature_entitlements.c.capability == purchases.c.capability,
                feature_entitlements.c.status == EntitlementStatus.PURCHASED.value,
            )
        )
        rows = session.execute(
            select(purchases)
            .where(purchases.c.status == PurchaseStatus.COMPLETED.value)
            .where(purchases.c.scope_id.is_not(None))
            .where(~unlocked)
        ).fetchall()
        report.completed_without_entitlement = [Purchase.from_row(row) for row in rows]

        backed = exists().where(
            and_(
                purchases.c.scope_id == feature_entitlements.c.scope_id,
                purchases.c.capability == feature_entitlements.c.capability,
                purchases.c.status == PurchaseStatus.COMPLETED.value,
            )
        )
        rows = session.execute(
            select(feature_entitlements)
            .where(feature_entitlements.c.status == EntitlementStatus.PURCHASED.value)
            .where(~backed)
        ).fetchall()
        report.entitlements_without_purchase = [FeatureEntitlement.from_row(row) for row in rows]

    for purchase in report.completed_without_entitlement:
        log_event(
            "error",
            "integrity.completed_without_entitlement",
            owner_id=purchase.owner_id,
            purchase_id=purchase.id,
            error_code=DataIntegrityError.code,
            extra={"scope_id": purchase.scope_id, "capability": purchase.capability},
        )
    for entitlement in report.entitlements_without_purchase:
        log_event(
            "error",
            "integrity.entitlement_without_purchase",
            error_code=DataIntegrityError.code,
            extra={"scope_id": entitlement.scope_id, "capability": entitlement.capability},
        )

    return report
