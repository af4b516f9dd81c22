"""
api/routes/stats.py -- Aggregated client counts per organization scope.

Routes:
  GET /api/stats/global             -- whole network (global stats access)
  GET /api/stats/franchises/{id}    -- one franchise and its centers
  GET /api/stats/centers/{id}       -- one center

This is a read-only aggregate router -- no mutations here. Access rules live
in auth.permissions.check_stats_access.
"""

from fastapi import APIRouter, Depends, Request

from api.models import Envelope, StatsData
from auth.dependencies import get_permissions, require_password_current
from auth.models import User, UserPermissions
from auth.permissions import check_stats_access
from core.errors import not_found
from crm.store import CRMStore

# Auth policy: every route requires a session and the matching stats access.
router = APIRouter()


def _envelope(stats: StatsData) -> dict:
    return Envelope(data=stats.model_dump()).model_dump(exclude_none=True)


@router.get("/stats/global")
def global_stats(
    request: Request,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    check_stats_access(user, perms, "global")
    crm: CRMStore = request.app.state.crm
    return _envelope(
        StatsData(
            scope="global",
            center_count=len(crm.list_centers()),
            client_count=crm.count_clients(),
        )
    )


@router.get("/stats/franchises/{franchise_id}")
def franchise_stats(
    request: Request,
    franchise_id: int,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    crm: CRMStore = request.app.state.crm
    franchise = crm.get_franchise(franchise_id)
    if franchise is None:
        raise not_found("Franchise", franchise_id)
    check_stats_access(user, perms, "franchise", franchise_id)
    center_ids = [c.id for c in crm.list_centers(franchise_id=franchise_id)]
    return _envelope(
        StatsData(
            scope="franchise",
            target_id=franchise_id,
            name=franchise.name,
            center_count=len(center_ids),
            client_count=crm.count_clients(center_ids=center_ids),
        )
    )


@router.get("/stats/centers/{center_id}")
def center_stats(
    request: Request,
    center_id: int,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    crm: CRMStore = request.app.state.crm
    center = crm.get_center(center_id)
    if center is None:
        raise not_found("Center", center_id)
    check_stats_access(user, perms, "center", center_id)
    return _envelope(
        StatsData(
            scope="center",
            target_id=center_id,
            name=center.name,
            center_count=1,
            client_count=crm.count_clients(center_ids=[center_id]),
        )
    )
