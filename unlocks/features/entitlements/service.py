"""
Feature entitlement store.

One row per (scope, capability). Rows are created lazily by the reconciler the
first time a purchase completes; reads of a missing row return a locked view.
Once purchased, an entitlement is never downgraded here.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from unlocks.core.database import feature_entitlements, get_db_session
from unlocks.features.purchases.catalog import CAPABILITIES
from unlocks.models.purchase import EntitlementStatus, FeatureEntitlement


_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def get_entitlement(scope_id: str, capability: str) -> FeatureEntitlement:
    """Current unlock state; a missing row reads as locked."""
    with get_db_session() as session:
        row = session.execute(
            select(feature_entitlements)
            .where(feature_entitlements.c.scope_id == scope_id)
            .where(feature_entitlements.c.capability == capability)
        ).first()

    if row is None:
        return FeatureEntitlement.locked(scope_id, capability)
    return FeatureEntitlement.from_row(row)


def list_for_scope(scope_id: str) -> List[FeatureEntitlement]:
    """
    Entitlements for every book-scoped capability in the catalog.

    Capabilities with no row are included as locked so callers get a complete view.
    """
    with get_db_session() as session:
        rows = session.execute(
            select(feature_entitlements).where(feature_entitlements.c.scope_id == scope_id)
        ).fetchall()

    stored = {row._mapping["capability"]: FeatureEntitlement.from_row(row) for row in rows}
    result = []
    for name, capability in CAPABILITIES.items():
        if not capability.book_scoped:
            continue
        result.append(stored.get(name) or FeatureEntitlement.locked(scope_id, name))
    # Rows for capabilities no longer in the catalog are still reported
    for name, entitlement in stored.items():
        if name not in CAPABILITIES:
            result.append(entitlement)
    return result


def upsert_purchased(
    session: Session,
    scope_id: str,
    capability: str,
    *,
    unlocked_at: datetime,
    price: Optional[int] = None,
) -> None:
    """
    Mark (scope_id, capability) purchased inside the caller's transaction.

    Idempotent: an already-purchased row keeps its original unlocked_at and price.
    """
    now = datetime.now(timezone.utc)
    dialect = session.get_bind().dialect.name
    dialect_insert = _DIALECT_INSERTS.get(dialect)

    if dialect_insert is not None:
        stmt = dialect_insert(feature_entitlements).values(
            id=str(uuid.uuid4()),
            scope_id=scope_id,
            capability=capability,
            status=EntitlementStatus.PURCHASED.value,
            unlocked_at=unlocked_at,
            price=price,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[feature_entitlements.c.scope_id, feature_entitlements.c.capability],
            set_={
                "status": EntitlementStatus.PURCHASED.value,
                "unlocked_at": stmt.excluded.unlocked_at,
                "price": stmt.excluded.price,
                "updated_at": stmt.excluded.updated_at,
            },
            where=feature_entitlements.c.status != EntitlementStatus.PURCHASED.value,
        )
        session.execute(stmt)
        return

    existing = session.execute(
        select(feature_entitlements.c.status)
        .where(feature_entitlements.c.scope_id == scope_id)
        .where(feature_entitlements.c.capability == capability)
    ).first()
    if existing is None:
        session.execute(
            insert(feature_entitlements).values(
                id=str(uuid.uuid4()),
                scope_id=scope_id,
                capability=capability,
                status=EntitlementStatus.PURCHASED.value,
                unlocked_at=unlocked_at,
                price=price,
                created_at=now,
                updated_at=now,
            )
        )
    elif existing.status != EntitlementStatus.PURCHASED.value:
        session.execute(
            update(feature_entitlements)
            .where(feature_entitlements.c.scope_id == scope_id)
            .where(feature_entitlements.c.capability == capability)
            .values(
                status=EntitlementStatus.PURCHASED.value,
                unlocked_at=unlocked_at,
                price=price,
                updated_at=now,
            )
        )
