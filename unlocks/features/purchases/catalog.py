"""
Capability catalog.

Prices are in minor units (cents). Book-scoped capabilities unlock a feature
for one book and require a scope_id; user-level capabilities are credits
counted from the ledger and must not carry a scope_id.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from unlocks.core.errors import ValidationError


@dataclass(frozen=True)
class Capability:
    name: str
    display_name: str
    price: int
    book_scoped: bool

    @property
    def is_free(self) -> bool:
        return self.price == 0


CAPABILITIES: Dict[str, Capability] = {
    "summary": Capability("summary", "Summary", 0, book_scoped=True),
    "manuscript-report": Capability("manuscript-report", "Manuscript Report", 14999, book_scoped=True),
    "marketing-assets": Capability("marketing-assets", "Marketing Assets", 14999, book_scoped=True),
    "book-covers": Capability("book-covers", "Book Covers", 14999, book_scoped=True),
    "landing-page": Capability("landing-page", "Landing Page", 14999, book_scoped=True),
    "book-upload": Capability("book-upload", "Book Upload", 9999, book_scoped=False),
}


def get_capability(name: str) -> Capability:
    capability = CAPABILITIES.get(name)
    if capability is None:
        raise ValidationError(f"Unknown capability: {name}", code="unknown_capability")
    return capability


def validate_scope(capability: Capability, scope_id: Optional[str]) -> None:
    """Book-scoped capabilities need a scope; user-level ones must not have one."""
    if capability.book_scoped and not scope_id:
        raise ValidationError(
            f"{capability.name} is book-scoped and requires scope_id",
            code="scope_required",
        )
    if not capability.book_scoped and scope_id:
        raise ValidationError(
            f"{capability.name} is a user-level capability and cannot take scope_id",
            code="scope_not_allowed",
        )
