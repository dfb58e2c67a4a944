"""
Outward collaborators.

Book ownership and credit consumption belong to the host application. The
purchase flow only asks these questions; the defaults below are permissive so
the service runs standalone. Replace them with app.dependency_overrides.
"""
from typing import Protocol


class ScopeAccessPolicy(Protocol):
    def can_access(self, owner_id: str, scope_id: str) -> bool:
        """True if owner_id may buy features for scope_id."""
        ...


class ConsumptionSource(Protocol):
    def count_consumed(self, owner_id: str, capability: str) -> int:
        """Units of capability owner_id has already used (e.g. books uploaded)."""
        ...


class OpenScopeAccess:
    def can_access(self, owner_id: str, scope_id: str) -> bool:
        return True


class NoConsumption:
    def count_consumed(self, owner_id: str, capability: str) -> int:
        return 0


def get_scope_access() -> ScopeAccessPolicy:
    """FastAPI dependency."""
    return OpenScopeAccess()


def get_consumption_source() -> ConsumptionSource:
    """FastAPI dependency."""
    return NoConsumption()
