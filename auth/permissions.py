"""
auth/permissions.py -- Role/level/scope access control.

derive_permissions() is a pure function: the same user and organization
directory always produce the same UserPermissions. Nothing here is stored;
routes recompute permissions per request from the current user row, so a role
change takes effect on the user's next request.

Scope rules:
  admin role or site level  -- every franchise and every center
  franchise level           -- its franchise and all centers of that franchise
  center level              -- its own center only

Account management (check_can_manage) also ranks roles and levels:
admin > director > manager > sales = technician, site > franchise > center.

The check_* helpers raise the matching taxonomy error instead of returning
False, so route code reads as a list of preconditions.

Layer rule: no imports from api/ or crm.store. crm.models (pure dataclasses)
is allowed for the OrgDirectory shape.
"""

from __future__ import annotations

from typing import Iterable, Optional

from auth.models import Level, Role, User, UserPermissions
from core.errors import (
    center_access_denied,
    forbidden,
    franchise_access_denied,
    insufficient_role,
    invalid_level,
    invalid_role,
    stats_access_denied,
)
from crm.models import OrgDirectory

STATS_TYPES = ("center", "franchise", "global", "employee")

# (create, edit, delete, view_all) per role
_CASE_CAPABILITIES: dict[Role, tuple[bool, bool, bool, bool]] = {
    Role.admin: (True, True, True, True),
    Role.director: (True, True, True, True),
    Role.manager: (True, True, True, True),
    Role.sales: (True, True, False, False),
    Role.technician: (True, True, False, False),
}

_STOCK_ROLES = frozenset({Role.admin, Role.director, Role.manager, Role.technician})
_STATS_ROLES = frozenset({Role.admin, Role.director, Role.manager})
_EMPLOYEE_MANAGER_ROLES = frozenset({Role.admin, Role.director, Role.manager})

# Lower rank = more authority. Nobody but an admin may manage or hand out a
# role or level ranked above their own.
_ROLE_RANK: dict[Role, int] = {
    Role.admin: 0,
    Role.director: 1,
    Role.manager: 2,
    Role.sales: 3,
    Role.technician: 3,
}
_LEVEL_RANK: dict[Level, int] = {Level.site: 0, Level.franchise: 1, Level.center: 2}


def parse_role(value: Optional[str]) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise invalid_role(value) from None


def parse_level(value: Optional[str]) -> Level:
    try:
        return Level(value)
    except ValueError:
        raise invalid_level(value) from None


def has_global_scope(user: User) -> bool:
    return user.role == Role.admin.value or user.level == Level.site.value


def derive_permissions(user: User, directory: OrgDirectory) -> UserPermissions:
    """Compute capability flags and accessible ids for one user.

    Raises INVALID_ROLE / INVALID_LEVEL when the stored values are outside the
    closed sets -- a corrupted row must not silently gain or lose access.
    """
    role = parse_role(user.role)
    level = parse_level(user.level)

    if has_global_scope(user):
        franchise_ids = list(directory.franchise_ids)
        center_ids = directory.center_ids
    elif level is Level.franchise:
        franchise_ids = [user.franchise_id] if user.franchise_id is not None else []
        center_ids = directory.centers_of(user.franchise_id) if user.franchise_id is not None else []
    else:
        franchise_ids = []
        center_ids = [user.center_id] if user.center_id is not None else []

    create, edit, delete, view_all = _CASE_CAPABILITIES[role]
    can_view_stats = role in _STATS_ROLES
    is_admin = role is Role.admin
    is_director = role is Role.director

    return UserPermissions(
        can_manage_franchises=is_admin or (is_director and level is Level.site),
        can_manage_centers=is_admin or (is_director and level in (Level.site, Level.franchise)),
        can_manage_employees=role in _EMPLOYEE_MANAGER_ROLES,
        can_create_cases=create,
        can_edit_cases=edit,
        can_delete_cases=delete,
        can_view_all_cases=view_all,
        can_manage_stock=role in _STOCK_ROLES,
        can_view_stats=can_view_stats,
        can_view_all_stats=is_admin or (can_view_stats and level is Level.site),
        accessible_center_ids=center_ids,
        accessible_franchise_ids=franchise_ids,
    )


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def require_roles(user: User, roles: Iterable[Role]) -> None:
    allowed = [r.value for r in roles]
    if user.role not in allowed:
        raise insufficient_role(allowed, user.role)


def check_center_access(perms: UserPermissions, center_id: int, center_name: Optional[str] = None) -> None:
    if center_id not in perms.accessible_center_ids:
        raise center_access_denied(center_id, center_name)


def check_franchise_access(perms: UserPermissions, franchise_id: int, franchise_name: Optional[str] = None) -> None:
    if franchise_id not in perms.accessible_franchise_ids:
        raise franchise_access_denied(franchise_id, franchise_name)


def check_stats_access(
    user: User,
    perms: UserPermissions,
    stats_type: str,
    target_id: Optional[int] = None,
) -> None:
    """Allow or refuse a statistics view.

    Everyone may see their own employee statistics; every other view needs
    the stats capability and the target inside the user's scope.
    """
    if stats_type == "employee" and target_id is not None and target_id == user.id:
        return
    if stats_type not in STATS_TYPES or not perms.can_view_stats:
        raise stats_access_denied(stats_type, target_id)
    if stats_type == "global" and not perms.can_view_all_stats:
        raise stats_access_denied(stats_type, target_id)
    if stats_type == "franchise" and target_id not in perms.accessible_franchise_ids:
        raise stats_access_denied(stats_type, target_id)
    if stats_type == "center" and target_id not in perms.accessible_center_ids:
        raise stats_access_denied(stats_type, target_id)


def check_can_manage(actor: User, perms: UserPermissions, target: User) -> None:
    """Refuse unless actor may administer target's account.

    Only admins manage admins. Everyone else needs the employee-management
    capability, may not reach a role or level above their own, and needs the
    target's center or franchise inside their scope. Call it with the account
    as it will be after a change, not only as it is now.
    """
    if not perms.can_manage_employees:
        raise forbidden("manage employees")
    if actor.role == Role.admin.value:
        return
    if target.role == Role.admin.value:
        raise forbidden("manage", "an administrator account")
    if _ROLE_RANK[parse_role(target.role)] < _ROLE_RANK[parse_role(actor.role)]:
        raise forbidden("manage", f"a {target.role} account")
    if _LEVEL_RANK[parse_level(target.level)] < _LEVEL_RANK[parse_level(actor.level)]:
        raise forbidden("manage", f"a {target.level}-level account")
    if actor.level == Level.site.value:
        return
    in_scope = (target.center_id is not None and target.center_id in perms.accessible_center_ids) or (
        target.franchise_id is not None and target.franchise_id in perms.accessible_franchise_ids
    )
    if not in_scope:
        raise forbidden("manage", f"employee #{target.id}")
