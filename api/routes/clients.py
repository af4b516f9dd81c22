"""
api/routes/clients.py -- Client directory endpoints.

Routes:
  GET /api/clients        -- clients of every center the caller can access
  GET /api/clients/{id}   -- one client; center access is checked

Scoping comes from auth.permissions: users with global scope see every
client; everyone else is restricted to their accessible centers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ClientOut, Envelope, ListEnvelope
from auth.dependencies import get_permissions, require_password_current
from auth.models import User, UserPermissions
from auth.permissions import check_center_access, has_global_scope
from core.errors import not_found
from crm.store import CRMStore

# Auth policy:
# - GET /api/clients:       session (no pending password change)
# - GET /api/clients/{id}:  session + center access
router = APIRouter()


@router.get("/clients")
def list_clients(
    request: Request,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    crm: CRMStore = request.app.state.crm
    center_ids = None if has_global_scope(user) else perms.accessible_center_ids
    clients = crm.list_clients(center_ids=center_ids)
    data = [ClientOut.from_client(c).model_dump() for c in clients]
    return ListEnvelope(count=len(data), data=data).model_dump()


@router.get("/clients/{client_id}")
def get_client(
    request: Request,
    client_id: int,
    user: User = Depends(require_password_current),
    perms: UserPermissions = Depends(get_permissions),
) -> dict:
    crm: CRMStore = request.app.state.crm
    client = crm.get_client(client_id)
    if client is None:
        raise not_found("Client", client_id)
    center = crm.get_center(client.center_id)
    check_center_access(perms, client.center_id, center.name if center else None)
    return Envelope(data=ClientOut.from_client(client).model_dump()).model_dump(exclude_none=True)
