"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in crm/models.py -- dataclasses own domain shape; stores, the auth workflow,
and routes do the work.

Layer rule: no imports from api/ or crm/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    admin = "admin"
    director = "director"
    manager = "manager"
    sales = "sales"
    technician = "technician"


class Level(str, Enum):
    """Position in the organization tree: head office, franchise, or center."""

    site = "site"
    franchise = "franchise"
    center = "center"


@dataclass
class User:
    """An employee account.

    Accounts are never deleted -- is_active=False is the soft delete.

    failed_login_attempts / locked_until drive the login lockout. locked_until
    is None unless the account is (or was) locked; the auth workflow compares
    it to the current time on every attempt.

    must_change_password is set on creation and on admin reset; the account
    can only reach /auth/me, /auth/logout, and /auth/change-password until the
    user chooses a new password. password_changed_at tells the two cases apart:
    it stays None until the user has picked a password of their own.
    """

    username: str
    email: str
    first_name: str
    last_name: str
    role: str  # Role value
    level: str  # Level value
    id: int | None = None
    hashed_password: str | None = None
    phone: str | None = None
    site_id: int | None = None
    franchise_id: int | None = None
    center_id: int | None = None
    is_active: bool = True
    must_change_password: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_login: str | None = None  # ISO 8601
    password_changed_at: str | None = None  # ISO 8601, None until the user picks their own password
    hire_date: str | None = None  # YYYY-MM-DD
    created_at: str | None = None


@dataclass
class SessionRecord:
    """One row of the server-side session table, payload decoded.

    created_at / last_activity / expires_at are epoch seconds. The payload
    persisted in the table holds user_id, created_at, and last_activity.
    """

    id: str
    user_id: int
    created_at: float
    last_activity: float
    expires_at: float


@dataclass
class UserPermissions:
    """Capabilities derived from role, level, and scope. Never persisted."""

    can_manage_franchises: bool = False
    can_manage_centers: bool = False
    can_manage_employees: bool = False
    can_create_cases: bool = False
    can_edit_cases: bool = False
    can_delete_cases: bool = False
    can_view_all_cases: bool = False
    can_manage_stock: bool = False
    can_view_stats: bool = False
    can_view_all_stats: bool = False
    accessible_center_ids: list[int] = field(default_factory=list)
    accessible_franchise_ids: list[int] = field(default_factory=list)
