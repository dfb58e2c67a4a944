"""
Feature entitlement API routes.

- GET /api/scopes/{scope_id}/features: every book-scoped capability with its state
- GET /api/scopes/{scope_id}/features/{capability}: one capability
"""
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from unlocks.core.auth import get_current_user_id
from unlocks.core.errors import PermissionError
from unlocks.features.entitlements.service import get_entitlement, list_for_scope
from unlocks.features.purchases.access import ScopeAccessPolicy, get_scope_access
from unlocks.features.purchases.catalog import get_capability
from unlocks.models.purchase import FeatureEntitlement


router = APIRouter(prefix="/scopes", tags=["entitlements"])


class ScopeFeaturesResponse(BaseModel):
    scope_id: str
    features: List[FeatureEntitlement]


def _require_scope_access(user_id: str, scope_id: str, scope_access: ScopeAccessPolicy) -> None:
    if not scope_access.can_access(user_id, scope_id):
        raise PermissionError(f"Not allowed to read scope {scope_id}")


@router.get("/{scope_id}/features", response_model=ScopeFeaturesResponse)
def list_features(
    scope_id: str,
    user_id: str = Depends(get_current_user_id),
    scope_access: ScopeAccessPolicy = Depends(get_scope_access),
):
    _require_scope_access(user_id, scope_id, scope_access)
    return ScopeFeaturesResponse(scope_id=scope_id, features=list_for_scope(scope_id))


@router.get("/{scope_id}/features/{capability}", response_model=FeatureEntitlement)
def get_feature(
    scope_id: str,
    capability: str,
    user_id: str = Depends(get_current_user_id),
    scope_access: ScopeAccessPolicy = Depends(get_scope_access),
):
    """Unlock state of one capability; a never-purchased capability reads as locked."""
    get_capability(capability)
    _require_scope_access(user_id, scope_id, scope_access)
    return get_entitlement(scope_id, capability)
