"""
crm/models.py -- Domain dataclasses for the Everglass CRM data layer.

These are pure data containers with zero logic. Queries live in crm/store.py;
scope decisions live in auth/permissions.py.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Franchise:
    name: str
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class Center:
    """A physical center. Every center belongs to at most one franchise."""

    name: str
    franchise_id: Optional[int] = None
    city: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class Client:
    """A customer record attached to the center that handles it.

    id is None before the record is written to the database.
    """

    center_id: int
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert


@dataclass
class OrgDirectory:
    """Snapshot of the organization tree used to expand access scopes.

    center_franchise maps every center id to its franchise id (None for
    centers attached directly to the head office).
    """

    franchise_ids: list[int] = field(default_factory=list)
    center_franchise: dict[int, Optional[int]] = field(default_factory=dict)

    @property
    def center_ids(self) -> list[int]:
        return sorted(self.center_franchise)

    def centers_of(self, franchise_id: int) -> list[int]:
        return sorted(c for c, f in self.center_franchise.items() if f == franchise_id)
