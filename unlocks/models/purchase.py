"""
unlocks/models/purchase.py

Domain models for purchases, entitlements and credit accounting.

Rows from the `purchases` and `feature_entitlements` tables are surfaced as
frozen models so callers can never mutate ledger state outside the reconciler.
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class EntitlementStatus(str, Enum):
    LOCKED = "locked"
    PURCHASED = "purchased"


class Purchase(BaseModel):
    """
    One purchase attempt and its outcome.

    scope_id is None for user-level capabilities (e.g. an upload credit);
    for book-scoped capabilities it names the book.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    scope_id: Optional[str] = None
    capability: str
    amount: int
    currency: str
    payment_method: Optional[str] = None
    status: PurchaseStatus
    provider_reference: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    updated_at: datetime

    @property
    def is_user_level(self) -> bool:
        return self.scope_id is None

    @classmethod
    def from_row(cls, row: Any) -> "Purchase":
        return cls.model_validate(dict(row._mapping))


class FeatureEntitlement(BaseModel):
    """Unlock state of one capability for one scope. Absent rows read as locked."""
    model_config = ConfigDict(frozen=True)

    scope_id: str
    capability: str
    status: EntitlementStatus = EntitlementStatus.LOCKED
    unlocked_at: Optional[datetime] = None
    price: Optional[int] = None

    @property
    def is_unlocked(self) -> bool:
        return self.status == EntitlementStatus.PURCHASED

    @classmethod
    def from_row(cls, row: Any) -> "FeatureEntitlement":
        data = dict(row._mapping)
        return cls(
            scope_id=data["scope_id"],
            capability=data["capability"],
            status=data["status"],
            unlocked_at=data.get("unlocked_at"),
            price=data.get("price"),
        )

    @classmethod
    def locked(cls, scope_id: str, capability: str) -> "FeatureEntitlement":
        return cls(scope_id=scope_id, capability=capability)


class CreditSummary(BaseModel):
    """Derived credit account for a user-level capability. Never stored."""
    model_config = ConfigDict(frozen=True)

    owner_id: str
    capability: str
    purchased: int
    consumed: int
    remaining: int
    has_permission: bool


class CreditStatement(BaseModel):
    """Credit summary plus the purchases behind it, newest first (display only)."""
    model_config = ConfigDict(frozen=True)

    summary: CreditSummary
    total_spent: int
    purchases: List[Purchase]
